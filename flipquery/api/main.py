"""
FastAPI application entry-point.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flipquery.api.routers import capabilities, query
from flipquery.core.logging import get_logger
from flipquery.hybrid.processor import HybridQueryProcessor

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    processor = HybridQueryProcessor()
    await processor.initialize()
    app.state.processor = processor
    logger.info("API ready")
    yield
    app.state.processor = None


app = FastAPI(
    title="Flip Query",
    version="0.1.0",
    description="Hybrid natural-language queries over item flip history",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, prefix="/query", tags=["Query"])
app.include_router(capabilities.router, tags=["Capabilities"])


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    from flipquery.core.config import get_settings

    uvicorn.run("flipquery.api.main:app", host="0.0.0.0", port=get_settings().api_port)
