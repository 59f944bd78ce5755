"""
asgi.py -- ASGI entry point for CredKeep.

api/main.py assembles the app; this module only exposes it under the name
servers expect.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
