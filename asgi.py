"""
asgi.py -- Application assembly for Gatehouse.

Builds the one process-wide app from environment settings. Tests and embedders
call api.main.create_app() directly with their own Settings instead.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
