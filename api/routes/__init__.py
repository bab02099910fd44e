"""API Routes Package."""

from api.routes import health, imports, documents, settlements

__all__ = [
    "health",
    "imports",
    "documents",
    "settlements",
]
