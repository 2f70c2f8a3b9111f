"""
Identity Normalization and Boundary Validation.

Every identity is normalized before it is used as a registry key, a storage
path component or a process environment value. Terminal input and resize
requests coming from a viewer are validated here before they reach a process.

Identity Rules:
- Case-folded and stripped of surrounding whitespace
- 1-32 characters from [a-z0-9_-]
- Never ".", ".." and never containing ".."

Author: Backend Lead Developer
"""

from __future__ import annotations

import re

__all__ = [
    "ValidationError",
    "InvalidIdentityError",
    "InvalidDimensionsError",
    "InvalidInputError",
    "normalize_identity",
    "validate_path_component",
    "validate_terminal_dimensions",
    "validate_terminal_input",
    "MAX_IDENTITY_LENGTH",
    "MAX_INPUT_LENGTH",
    "MIN_DIMENSION",
    "MAX_DIMENSION",
]

MAX_IDENTITY_LENGTH = 32
MAX_INPUT_LENGTH = 10000
MIN_DIMENSION = 1
MAX_DIMENSION = 1000

_IDENTITY_RE = re.compile(r"^[a-z0-9_-]{1,32}$")


class ValidationError(ValueError):
    """Base class for values rejected at the broker boundary."""
    pass


class InvalidIdentityError(ValidationError):
    """Raised when an identity cannot be normalized."""
    pass


class InvalidDimensionsError(ValidationError):
    """Raised when terminal dimensions are out of range."""
    pass


class InvalidInputError(ValidationError):
    """Raised when terminal input is malformed or too large."""
    pass


def normalize_identity(raw: object) -> str:
    """
    Normalize a raw identity into its canonical form.

    Args:
        raw: Identity as received from the token validator or a route

    Returns:
        Canonical identity string

    Raises:
        InvalidIdentityError: If the identity cannot be normalized
    """
    if not isinstance(raw, str):
        raise InvalidIdentityError("Identity must be a string")

    normalized = raw.strip().lower()

    if not normalized:
        raise InvalidIdentityError("Identity cannot be empty")

    if len(normalized) > MAX_IDENTITY_LENGTH:
        raise InvalidIdentityError(
            f"Identity too long (max {MAX_IDENTITY_LENGTH} characters)"
        )

    if not _IDENTITY_RE.match(normalized):
        raise InvalidIdentityError(
            "Identity must contain only lowercase letters, numbers, hyphens, and underscores"
        )

    if normalized in (".", "..") or ".." in normalized:
        raise InvalidIdentityError("Invalid identity")

    return normalized


def validate_path_component(value: str) -> None:
    """Reject values that are unsafe as a single filesystem path component."""
    if "\0" in value:
        raise InvalidIdentityError("Null bytes not allowed")
    if ".." in value:
        raise InvalidIdentityError("Directory traversal not allowed")
    if "/" in value or "\\" in value:
        raise InvalidIdentityError("Path separators not allowed")
    if value in ("", "."):
        raise InvalidIdentityError("Invalid path component")


def _is_dimension(value: object) -> bool:
    # bool is an int subclass but never a valid dimension
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_DIMENSION <= value <= MAX_DIMENSION
    )


def validate_terminal_dimensions(cols: object, rows: object) -> None:
    """
    Validate a resize request.

    Raises:
        InvalidDimensionsError: If either value is not an integer in [1, 1000]
    """
    if not _is_dimension(cols):
        raise InvalidDimensionsError(
            f"Invalid terminal columns (must be {MIN_DIMENSION}-{MAX_DIMENSION})"
        )
    if not _is_dimension(rows):
        raise InvalidDimensionsError(
            f"Invalid terminal rows (must be {MIN_DIMENSION}-{MAX_DIMENSION})"
        )


def _utf16_length(data: str) -> int:
    return len(data.encode("utf-16-le", errors="surrogatepass")) // 2


def validate_terminal_input(data: object, max_length: int = MAX_INPUT_LENGTH) -> str:
    """
    Validate terminal input before it is written to a process.

    Input is passed through unchanged; only its type and size are checked.
    Size is measured in UTF-16 code units, the unit browser clients count in,
    so a character outside the BMP counts as two.

    Raises:
        InvalidInputError: If data is not a string or exceeds max_length
    """
    if not isinstance(data, str):
        raise InvalidInputError("Terminal input must be a string")

    size = _utf16_length(data)
    if size > max_length:
        raise InvalidInputError(
            f"Terminal input too large ({size} > {max_length})"
        )

    return data
