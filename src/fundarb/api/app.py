"""FastAPI application factory for the engine control API."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from fundarb.api import routes


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the control API application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        FastAPI application. Route handlers read the engine from
        app.state.engine, which the caller must set.
    """
    app = FastAPI(
        title="Funding Opportunity Engine",
        lifespan=lifespan,
    )
    app.include_router(routes.router)
    return app
