"""
Deployment entrypoint.
Imports the FastAPI app from server.py so uvicorn can find it as main:app
"""

from server import app, configure_logging

configure_logging()

__all__ = ["app"]
