"""
Core terminal broker modules.

This package contains the session registry, the PTY spawn boundary, the
viewer I/O relay and the idle reaper, plus identity validation and tokens.
"""

from .identity import (
    ValidationError,
    InvalidIdentityError,
    InvalidDimensionsError,
    InvalidInputError,
    normalize_identity,
)
from .auth import TokenValidator, TokenResult, CredentialStore
from .pty_manager import PTYProcess, PTYSpawner, ProcessHandle, SessionSpawnError
from .session_registry import SessionRegistry, ProcessSession
from .relay import ViewerRelay, WebSocketViewer, Viewer
from .reaper import IdleReaper

__all__ = [
    "ValidationError",
    "InvalidIdentityError",
    "InvalidDimensionsError",
    "InvalidInputError",
    "normalize_identity",
    "TokenValidator",
    "TokenResult",
    "CredentialStore",
    "PTYProcess",
    "PTYSpawner",
    "ProcessHandle",
    "SessionSpawnError",
    "SessionRegistry",
    "ProcessSession",
    "ViewerRelay",
    "WebSocketViewer",
    "Viewer",
    "IdleReaper",
]
