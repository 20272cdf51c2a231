"""
QuerySpec -- the structured intermediate representation between
a natural-language question about flip history and SQL.

Also holds the value types that travel through the hybrid pipeline:
parse results, validation results, conversation turns, clarification
context and the per-call outcomes returned by the processor.

Wire format is camelCase (``timeRange``, ``includeColumns`` ...) to match
the remote SQL-generation endpoint; models accept either spelling.
"""
from __future__ import annotations

import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Time ranges (exactly one form active) ────────────────

class PresetRange(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    preset: str = Field(..., description="last_7d | last_30d | this_week | this_month | last_month | all_time")


class DateRange(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    from_: datetime.date = Field(..., alias="from")
    to: datetime.date


class DayOfWeekRange(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    day_of_week: str = Field(..., alias="dayOfWeek", description="monday .. sunday")
    specific: bool = Field(False, description="True for 'last monday', False for 'monday flips'")


class ComparisonRange(_Model):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    comparison: Literal["weekend_vs_weekday", "weekday_vs_weekend"]


TimeRange = Union[PresetRange, DateRange, DayOfWeekRange, ComparisonRange]


# ── Spec parts ───────────────────────────────────────────

class MetricSpec(_Model):
    metric: str = Field(..., description="profit | roi | flips | avg_hold_time | volume | weighted_roi | *")
    op: str = Field(..., description="sum | avg | count | min | max | calculate")


class Filter(_Model):
    field: str
    op: str = Field(..., description="= | != | > | >= | < | <= | in | contains | between")
    value: Any = None


class SortSpec(_Model):
    by: str
    order: Literal["asc", "desc"] = "desc"


class QuerySpec(_Model):
    """Declarative description of one analytical request."""

    intent: str = Field("", description="Analytical goal, e.g. 'item_analysis'")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    time_range: TimeRange | None = Field(None, alias="timeRange")
    metrics: list[MetricSpec] = Field(default_factory=list)
    dimensions: list[str] | None = Field(None, description="Group-by axes")
    filters: list[Filter] | None = None
    sort: list[SortSpec] | None = None
    limit: int | None = None
    include_columns: list[str] | None = Field(None, alias="includeColumns")
    requires_confirmation: bool = Field(False, alias="requiresConfirmation")

    def to_wire(self) -> dict[str, Any]:
        """camelCase, JSON-safe dict without unset optionals."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# ── Validation ───────────────────────────────────────────

class ValidationResult(_Model):
    ok: bool
    reason: str | None = None
    suggestions: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    alternatives: list[str] = Field(default_factory=list)

    @classmethod
    def success(cls) -> "ValidationResult":
        return cls(ok=True)

    @classmethod
    def failure(
        cls,
        reason: str,
        suggestions: list[str] | None = None,
        alternatives: list[str] | None = None,
        missing: list[str] | None = None,
    ) -> "ValidationResult":
        return cls(
            ok=False,
            reason=reason,
            suggestions=suggestions or [],
            alternatives=alternatives or [],
            missing=missing or [],
        )


class Clarification(_Model):
    question: str
    options: list[str] = Field(default_factory=list)
    dynamic_options: bool = Field(False, alias="dynamicOptions")


# ── Parser output ────────────────────────────────────────

class ParsedFilter(_Model):
    field: str
    operator: str
    value: Any = None


class Modifiers(_Model):
    exclude: list[str] | None = None
    include: list[str] | None = None
    only_profitable: bool = Field(False, alias="onlyProfitable")


class ParsedComponents(_Model):
    time_range: TimeRange | None = Field(None, alias="timeRange")
    items: list[str] = Field(default_factory=list)
    metrics: list[str] = Field(default_factory=list)
    dimensions: list[str] = Field(default_factory=list)
    filters: list[ParsedFilter] = Field(default_factory=list)
    limits: int | None = None
    sort_by: str | None = Field(None, alias="sortBy")
    sort_order: Literal["asc", "desc"] = Field("desc", alias="sortOrder")
    modifiers: Modifiers = Field(default_factory=Modifiers)


class ParseResult(_Model):
    intent: str
    components: ParsedComponents
    confidence: float
    original_query: str = Field(..., alias="originalQuery")
    normalized_query: str = Field(..., alias="normalizedQuery")


# ── Conversation ─────────────────────────────────────────

class ProcessingState(str, Enum):
    READY = "ready"
    PARSING = "parsing"
    VALIDATING = "validating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    GENERATING_SQL = "generating_sql"
    IMPOSSIBLE = "impossible"
    ERROR = "error"


class ConversationTurn(_Model):
    query: str
    spec: QuerySpec | None = None
    sql: str | None = None
    result_count: int = Field(0, alias="resultCount")


class ClarificationContext(_Model):
    spec: QuerySpec
    parse_result: ParseResult = Field(..., alias="parseResult")
    original_query: str = Field(..., alias="originalQuery")


# ── Outcomes (one per processor call) ────────────────────

class ParsedOutcome(_Model):
    type: Literal["parsed"] = "parsed"
    spec: QuerySpec
    confidence: float
    preview: str
    state: ProcessingState = ProcessingState.READY


class ConfirmOutcome(_Model):
    type: Literal["confirm"] = "confirm"
    spec: QuerySpec
    preview: str
    confidence: float
    state: ProcessingState = ProcessingState.AWAITING_CONFIRMATION


class ClarifyOutcome(_Model):
    type: Literal["clarify"] = "clarify"
    question: str
    options: list[str] = Field(default_factory=list)
    context: ClarificationContext
    state: ProcessingState = ProcessingState.AWAITING_CLARIFICATION


class ImpossibleOutcome(_Model):
    type: Literal["impossible"] = "impossible"
    reason: str
    alternatives: list[str] = Field(default_factory=list)
    state: ProcessingState = ProcessingState.IMPOSSIBLE


class ErrorOutcome(_Model):
    type: Literal["error"] = "error"
    message: str
    fallback_to_api: bool = Field(False, alias="fallbackToAPI")
    state: ProcessingState = ProcessingState.ERROR


class FallbackOutcome(_Model):
    type: Literal["fallback_success"] = "fallback_success"
    sql: str
    used_fallback: bool = Field(True, alias="usedFallback")
    state: ProcessingState = ProcessingState.READY


Outcome = Annotated[
    Union[ParsedOutcome, ConfirmOutcome, ClarifyOutcome, ImpossibleOutcome, ErrorOutcome, FallbackOutcome],
    Field(discriminator="type"),
]
