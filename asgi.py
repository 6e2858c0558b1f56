"""
asgi.py -- ASGI entry point for ECVMS.

Run with:  uvicorn asgi:app --reload

Page rendering is served by the front-end; this process only exposes the
JSON API assembled in api/main.py.
"""

from api.main import app

__all__ = ["app"]
