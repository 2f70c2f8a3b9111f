"""REST API package."""

from .routes import router

__all__ = ["router"]
