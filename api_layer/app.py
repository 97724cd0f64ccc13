"""ASGI entry point.

Provides the FastAPI application instance for uvicorn once the package is
installed (pip install -e .).

Usage:
    - uvicorn app:app --host 0.0.0.0 --port 8000
    - Local: uvicorn app:app --reload
"""

from reqflow_api.main import create_app

app = create_app()
