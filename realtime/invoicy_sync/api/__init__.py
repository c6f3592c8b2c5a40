"""
Dashboard HTTP API.

Thin FastAPI layer over the sync engine: every screen of the dashboard
is served from a live view's snapshot.
"""

from .app import create_app
from .config import Settings

__all__ = ["create_app", "Settings"]
