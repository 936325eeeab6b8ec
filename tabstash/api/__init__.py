"""HTTP routes; the application itself is assembled in ``tabstash.main``."""

from .routes import router

__all__ = ["router"]
