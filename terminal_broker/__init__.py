"""
Per-User Terminal Session Broker.

Authenticates a viewer by signed identity token, runs one isolated chat CLI
per identity inside a PTY, and streams its terminal I/O to any number of
browser tabs over WebSocket:
- One live process per identity, shared by every attached viewer
- Process exit, logout and idle timeout all tear down through one path
- Prometheus metrics and a JSON health endpoint
"""

__version__ = "1.0.0"
__author__ = "Backend Lead Developer"

from .core import (
    SessionRegistry,
    ProcessSession,
    PTYSpawner,
    ViewerRelay,
    IdleReaper,
    TokenValidator,
    CredentialStore,
)

__all__ = [
    "SessionRegistry",
    "ProcessSession",
    "PTYSpawner",
    "ViewerRelay",
    "IdleReaper",
    "TokenValidator",
    "CredentialStore",
]
