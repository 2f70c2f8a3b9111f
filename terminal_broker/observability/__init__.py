"""Observability package initialization."""

from .metrics import (
    record_session_created,
    record_session_destroyed,
    record_sessions_reaped,
    record_viewer_connected,
    record_viewer_disconnected,
    record_message_rejected,
    record_output_dropped,
    record_pty_spawn,
    record_pty_kill_failure,
)

__all__ = [
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
