"""FastAPI control application factory."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI

from sniper.api import routes


def create_control_app(lifespan: Any = None) -> FastAPI:
    """Create the control API application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to inject startup/shutdown logic.

    Returns:
        FastAPI application with the control routes mounted under /api.
    """
    app = FastAPI(title="Funding Sniper Control", lifespan=lifespan)
    app.state.cycle_task = None
    app.include_router(routes.router, prefix="/api")
    return app
