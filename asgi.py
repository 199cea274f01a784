"""
asgi.py -- ASGI entry point for MedPortal.

Process managers import `app` from here so the module path stays stable
whatever api/main.py grows into.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
