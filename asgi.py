"""
asgi.py -- Application assembly for the PNIT security API.

Settings are read from the environment (and .env) once, here. A missing or
short MASTER_KEY stops the process at import time, before the server binds.

Run with:  uvicorn asgi:app --reload
"""

from api.main import create_app

app = create_app()
