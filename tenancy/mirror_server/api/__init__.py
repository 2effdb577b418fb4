"""
HTTP API for the mirror server.

This module provides:
- create_app: FastAPI application factory
- router: caller API and repair routes
"""

from .app import create_app, status_for
from .routes import router

__all__ = [
    "create_app",
    "router",
    "status_for",
]
