"""
asgi.py -- Application assembly for the Gentle Space admin service.

This is the ONLY file that imports from both api/ and web/. It joins the two
independent layers into a single ASGI app without coupling them to each other.

Run with:  uvicorn asgi:app --reload
"""

from fastapi import FastAPI

from api.main import create_app
from core.config import Settings
from web.routes import router as web_router


def build_app(settings: Settings | None = None) -> FastAPI:
    """Create the API app and mount the web UI router on it."""
    app = create_app(settings)
    app.include_router(web_router, tags=["Web UI"])
    return app


app = build_app()
