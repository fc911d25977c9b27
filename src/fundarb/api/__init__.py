"""Control API -- FastAPI routes over the opportunity engine."""

from fundarb.api.app import create_app

__all__ = ["create_app"]
