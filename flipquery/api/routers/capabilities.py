"""
GET /capabilities -- what the flip query pipeline can answer.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flipquery.api.deps import get_processor
from flipquery.hybrid.processor import HybridQueryProcessor

router = APIRouter()


class ColumnItem(BaseModel):
    name: str
    type: str
    description: str
    derived: bool


class MetricItem(BaseModel):
    name: str
    display: str
    description: str


class CapabilitiesResponse(BaseModel):
    table: str
    columns: list[ColumnItem]
    metrics: list[MetricItem]
    operations: list[str]
    dimensions: list[str]
    operators: list[str]
    time_presets: list[str]
    max_limit: int


@router.get("/capabilities", response_model=CapabilitiesResponse)
def list_capabilities(processor: HybridQueryProcessor = Depends(get_processor)) -> CapabilitiesResponse:
    """Return the schema, metric catalog and whitelists for the UI."""
    config = processor.validator.config
    caps, rules = config.capabilities, config.rules
    return CapabilitiesResponse(
        table=caps.table,
        columns=[
            ColumnItem(name=c.name, type=c.type, description=c.description, derived=c.derived)
            for c in caps.columns.values()
        ],
        metrics=[
            MetricItem(name=m.name, display=m.display, description=m.description)
            for m in caps.metrics.values()
        ],
        operations=list(rules.valid_operations),
        dimensions=list(rules.valid_dimensions),
        operators=list(rules.valid_operators),
        time_presets=list(rules.valid_presets),
        max_limit=rules.limit_max,
    )
