"""Request-scoped access to the shared HybridQueryProcessor."""
from __future__ import annotations

from fastapi import HTTPException, Request

from flipquery.hybrid.processor import HybridQueryProcessor


def get_processor(request: Request) -> HybridQueryProcessor:
    processor = getattr(request.app.state, "processor", None)
    if processor is None or not processor.initialized:
        raise HTTPException(status_code=503, detail="Query processor is not initialized")
    return processor
