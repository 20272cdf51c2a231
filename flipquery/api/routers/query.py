"""POST /query, /query/clarify, /query/sql, /query/run and GET /query/metrics."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from flipquery.core.errors import (
    ImpossibleQueryError,
    QueryExecutionError,
    SQLGenerationError,
    ValidationError,
)
from flipquery.core.logging import get_logger
from flipquery.core.utils import temporal_context
from flipquery.api.deps import get_processor
from flipquery.db.executor import execute_readonly
from flipquery.governance.capabilities import ValidationRules
from flipquery.hybrid.processor import HybridQueryProcessor
from flipquery.hybrid.spec import ClarificationContext, ConversationTurn, QuerySpec

logger = get_logger(__name__)
router = APIRouter()


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Question about your flips")
    conversation: list[ConversationTurn] = Field(default_factory=list, description="Previous turns, oldest first")


class ClarifyRequest(BaseModel):
    answer: str = Field(..., min_length=1)
    context: ClarificationContext


class SqlRequest(BaseModel):
    spec: QuerySpec


class SqlResponse(BaseModel):
    sql: str
    cached: bool


class RunRequest(BaseModel):
    sql: str = Field(..., min_length=1)


class RunResponse(BaseModel):
    columns: list[str]
    rows: list[dict]


def _dump(outcome: Any) -> dict:
    return outcome.model_dump(by_alias=True, mode="json")


def _check_length(text: str, rules: ValidationRules, field: str, minimum: int | None = None) -> None:
    """Reject text outside rules.query_length before the processor sees it."""
    low = rules.query_length_min if minimum is None else minimum
    if not low <= len(text) <= rules.query_length_max:
        raise HTTPException(
            status_code=422,
            detail=f"{field} must be {low}-{rules.query_length_max} characters, got {len(text)}",
        )


@router.post("")
async def query_endpoint(req: QueryRequest, processor: HybridQueryProcessor = Depends(get_processor)):
    """Question -> parsed / confirm / clarify / impossible / fallback outcome."""
    _check_length(req.question, processor.validator.config.rules, "question")
    try:
        outcome = await processor.process_query_with_fallback(req.question, req.conversation)
    except SQLGenerationError as exc:
        logger.warning("Fallback endpoint failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc))
    return _dump(outcome)


@router.post("/clarify")
async def clarify_endpoint(req: ClarifyRequest, processor: HybridQueryProcessor = Depends(get_processor)):
    """Merge a clarification answer into the pending spec."""
    _check_length(req.answer, processor.validator.config.rules, "answer", minimum=1)
    outcome = await processor.process_clarification_response(req.answer, req.context)
    return _dump(outcome)


@router.post("/sql", response_model=SqlResponse)
async def sql_endpoint(req: SqlRequest, processor: HybridQueryProcessor = Depends(get_processor)):
    """Confirmed spec -> SQL via the remote endpoint (cached)."""
    hits_before = processor.get_performance_metrics()["cache_hits"]
    try:
        sql = await processor.generate_sql(req.spec, temporal_context())
    except ImpossibleQueryError as exc:
        raise HTTPException(status_code=422, detail={"reason": str(exc), "alternatives": exc.alternatives})
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"reason": str(exc), "suggestions": exc.suggestions})
    except SQLGenerationError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    cached = processor.get_performance_metrics()["cache_hits"] > hits_before
    return SqlResponse(sql=sql, cached=cached)


@router.post("/run", response_model=RunResponse)
def run_endpoint(req: RunRequest, processor: HybridQueryProcessor = Depends(get_processor)):
    """Run generated SQL read-only against the flip table, nothing else."""
    try:
        result = execute_readonly(req.sql, capabilities=processor.validator.config.capabilities)
    except QueryExecutionError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return RunResponse(**result.to_dict())


@router.get("/metrics")
def metrics_endpoint(processor: HybridQueryProcessor = Depends(get_processor)) -> dict:
    return processor.get_performance_metrics()
