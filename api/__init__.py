"""API Package.

FastAPI server for the fiscal document import pipeline.
"""

from api.server import create_app

__all__ = [
    "create_app",
]
