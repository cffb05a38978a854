"""
API module for Harbormaster.

This module provides the FastAPI-based REST API for project orchestration.
"""

from __future__ import annotations

from typing import Optional

__all__ = ["app", "create_app", "run_server"]


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API server."""
    import uvicorn

    from harbormaster.api.app import app
    from harbormaster.config import get_settings

    settings = get_settings()
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port)


def __getattr__(name: str):
    if name in ("app", "create_app"):
        from harbormaster.api import app as module

        return getattr(module, name)
    raise AttributeError(name)
