"""Health check endpoints."""

import sqlite3
from datetime import datetime
from typing import Dict

from fastapi import APIRouter, Request
from pydantic import BaseModel

from core.observability.metrics import get_metrics


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    store = request.app.state.store
    try:
        store.count_documents()
        ledger = "up"
    except sqlite3.Error:
        ledger = "down"

    return HealthResponse(
        status="healthy" if ledger == "up" else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "ledger": ledger,
            "extraction": "up" if request.app.state.inference_service is not None else "disabled",
        }
    )


@router.get("/metrics")
async def metrics_summary() -> dict:
    """In-process import counters and timings."""
    return get_metrics().get_summary()
