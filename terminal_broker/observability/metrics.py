"""
Observability Module - Prometheus Metrics.

Metrics Collected:
- Session metrics (created, active, destroyed by reason, reaped)
- Viewer metrics (connections, active viewers)
- Relay metrics (rejected client messages by kind, dropped output)
- PTY metrics (spawns, spawn failures, kill failures)

Exposed by the application at /metrics.

Author: Backend Lead Developer
"""

from prometheus_client import Counter, Gauge, Histogram, Info

from .. import __version__

# Session Metrics
sessions_created_total = Counter(
    'broker_sessions_created_total',
    'Total number of process sessions created'
)

sessions_active = Gauge(
    'broker_sessions_active',
    'Number of currently registered process sessions'
)

sessions_destroyed_total = Counter(
    'broker_sessions_destroyed_total',
    'Total number of process sessions destroyed',
    ['reason']
)

sessions_reaped_total = Counter(
    'broker_sessions_reaped_total',
    'Total number of idle sessions destroyed by the reaper'
)

session_duration_seconds = Histogram(
    'broker_session_duration_seconds',
    'Lifetime of process sessions in seconds',
    buckets=(60, 300, 600, 1800, 3600, 7200, 14400)  # 1m to 4h
)

# Viewer Metrics
viewer_connections_total = Counter(
    'broker_viewer_connections_total',
    'Total number of viewer connections attached to a session'
)

viewers_active = Gauge(
    'broker_viewers_active',
    'Number of currently attached viewers'
)

messages_rejected_total = Counter(
    'broker_messages_rejected_total',
    'Total number of client messages rejected at the relay',
    ['kind']
)

output_dropped_total = Counter(
    'broker_output_dropped_total',
    'Total number of output chunks dropped for viewers that fell behind'
)

# PTY Metrics
pty_spawns_total = Counter(
    'broker_pty_spawns_total',
    'Total number of PTY processes spawned'
)

pty_failures_total = Counter(
    'broker_pty_failures_total',
    'Total number of PTY spawn or kill failures',
    ['operation']
)

# Service Info
service_info = Info(
    'terminal_broker',
    'Terminal broker information'
)

service_info.info({
    'version': __version__,
})


# Helper Functions

def record_session_created():
    """Record session creation."""
    sessions_created_total.inc()
    sessions_active.inc()


def record_session_destroyed(reason: str, duration_seconds: float):
    """Record session teardown."""
    sessions_destroyed_total.labels(reason=reason).inc()
    sessions_active.dec()
    session_duration_seconds.observe(duration_seconds)


def record_sessions_reaped(count: int):
    """Record sessions destroyed by an idle sweep."""
    if count > 0:
        sessions_reaped_total.inc(count)


def record_viewer_connected():
    """Record a viewer attaching to a session."""
    viewer_connections_total.inc()
    viewers_active.inc()


def record_viewer_disconnected():
    """Record a viewer detaching from a session."""
    viewers_active.dec()


def record_message_rejected(kind: str):
    """Record a client message rejected by validation."""
    messages_rejected_total.labels(kind=kind).inc()


def record_output_dropped(count: int = 1):
    """Record output chunks dropped because a viewer queue was full."""
    output_dropped_total.inc(count)


def record_pty_spawn(success: bool = True):
    """Record PTY spawn."""
    if success:
        pty_spawns_total.inc()
    else:
        pty_failures_total.labels(operation='spawn').inc()


def record_pty_kill_failure():
    """Record a failed PTY kill during teardown."""
    pty_failures_total.labels(operation='kill').inc()


__all__ = [
    # Metrics
    'sessions_created_total',
    'sessions_active',
    'sessions_destroyed_total',
    'viewers_active',

    # Helper Functions
    'record_session_created',
    'record_session_destroyed',
    'record_sessions_reaped',
    'record_viewer_connected',
    'record_viewer_disconnected',
    'record_message_rejected',
    'record_output_dropped',
    'record_pty_spawn',
    'record_pty_kill_failure',
]
