"""
Validates a QuerySpec against the declared capabilities and rulebook.

Checks run in order and stop at the first failure:
  1. Parse confidence is above the configured minimum
  2. Intent is present and at least one metric is requested
  3. Time range preset is whitelisted / explicit range is ordered and bounded
  4. Every metric and operation is whitelisted
  5. Dimension count is capped and every dimension is whitelisted
  6. Filter count is capped; operator, field and value type all check out
  7. Limit is within [1, max]
  8. Intent does not match a known impossible-query pattern

Each check is a plain function returning ``RuleFailure | None``.  The
validator never parses text and never generates SQL.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from flipquery.core.errors import ImpossibleQueryError, ValidationError
from flipquery.core.logging import get_logger
from flipquery.governance.capabilities import CapabilityConfig
from flipquery.hybrid.items import has_specific_item_name
from flipquery.hybrid.spec import (
    Clarification,
    DateRange,
    DayOfWeekRange,
    PresetRange,
    QuerySpec,
    ValidationResult,
)

logger = get_logger(__name__)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class RuleFailure:
    reason: str
    suggestions: list[str] = field(default_factory=list)
    alternatives: list[str] = field(default_factory=list)
    impossible: bool = False


Rule = Callable[[QuerySpec, CapabilityConfig], "RuleFailure | None"]


# ── Individual checks ────────────────────────────────────

def check_confidence(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    if spec.confidence < config.rules.confidence_min:
        return RuleFailure(
            "Query intent unclear, please be more specific",
            suggestions=[
                "Try using specific item names",
                'Specify a time period (e.g., "last week")',
                'Ask for specific metrics (e.g., "profit", "ROI")',
                "Use example patterns from the interface",
            ],
        )
    return None


def check_structure(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    if not spec.intent:
        return RuleFailure("Query intent not specified")
    if not spec.metrics:
        return RuleFailure(
            "No metrics specified for analysis",
            suggestions=["Specify what you want to analyze: profit, ROI, flip count, etc."],
        )
    return None


def check_time_range(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    tr = spec.time_range
    rules = config.rules
    if tr is None:
        return None

    if isinstance(tr, PresetRange):
        if tr.preset not in rules.valid_presets:
            return RuleFailure(
                f"Invalid time preset: {tr.preset}",
                suggestions=[f'"{p}"' for p in rules.valid_presets],
            )
    elif isinstance(tr, DateRange):
        days = (tr.to - tr.from_).days
        if days > rules.max_days:
            return RuleFailure(
                f"Time range too large ({days} days). Maximum: {rules.max_days} days",
                suggestions=["Use a shorter time period", 'Try "last_30d" or "this_month"'],
            )
        if days < 0:
            return RuleFailure(
                "End date must be after start date",
                suggestions=["Check your date format (YYYY-MM-DD)"],
            )
    elif isinstance(tr, DayOfWeekRange):
        if tr.day_of_week.lower() not in _WEEKDAYS:
            return RuleFailure(f"Invalid day of week: {tr.day_of_week}", suggestions=list(_WEEKDAYS))
    return None


def check_metrics(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    rules = config.rules
    for m in spec.metrics:
        if m.metric not in rules.valid_metrics:
            return RuleFailure(f"Invalid metric: {m.metric}", suggestions=list(rules.valid_metrics))
        if m.op not in rules.valid_operations:
            return RuleFailure(f"Invalid operation: {m.op}", suggestions=list(rules.valid_operations))
    return None


def check_dimensions(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    if not spec.dimensions:
        return None
    rules = config.rules
    if len(spec.dimensions) > rules.max_dimensions:
        return RuleFailure(
            f"Too many grouping dimensions ({len(spec.dimensions)}). Maximum: {rules.max_dimensions}",
            suggestions=["Focus on fewer groupings for clearer results"],
        )
    for dim in spec.dimensions:
        if dim not in rules.valid_dimensions:
            return RuleFailure(f"Invalid dimension: {dim}", suggestions=list(rules.valid_dimensions))
    return None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _check_filter_value(field_name: str, op: str, value: Any, field_type: str) -> RuleFailure | None:
    if field_type == "numeric":
        if not _is_number(value) and not isinstance(value, list):
            return RuleFailure(
                f"Invalid numeric value for {field_name}: {value}",
                suggestions=["Use a number value"],
            )
    elif field_type == "date":
        if op == "between" and (not isinstance(value, list) or len(value) != 2):
            return RuleFailure(
                "Date range requires two values",
                suggestions=['Use format: ["start-date", "end-date"]'],
            )
    elif field_type == "text":
        if not isinstance(value, (str, list)):
            return RuleFailure(f"Invalid text value for {field_name}", suggestions=["Use a text value"])
    return None


def check_filters(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    if not spec.filters:
        return None
    rules = config.rules
    columns = config.capabilities.columns
    if len(spec.filters) > rules.max_filters:
        return RuleFailure(
            f"Too many filters ({len(spec.filters)}). Maximum: {rules.max_filters}",
            suggestions=["Simplify your query with fewer conditions"],
        )
    for f in spec.filters:
        if f.op not in rules.valid_operators:
            return RuleFailure(f"Invalid filter operator: {f.op}", suggestions=list(rules.valid_operators))
        if f.field not in columns:
            return RuleFailure(f"Invalid filter field: {f.field}", suggestions=list(columns))
        failure = _check_filter_value(f.field, f.op, f.value, rules.field_type(f.field))
        if failure:
            return failure
    return None


def check_limit(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    if spec.limit is None:
        return None
    max_limit = config.rules.limit_max
    if spec.limit > max_limit:
        return RuleFailure(
            f"Result limit too high ({spec.limit}). Maximum: {max_limit}",
            suggestions=[f"Use limit of {max_limit} or less", "Remove limit for all results"],
        )
    if spec.limit < 1:
        return RuleFailure("Result limit must be at least 1", suggestions=["Use a positive number for limit"])
    return None


def check_possibility(spec: QuerySpec, config: CapabilityConfig) -> RuleFailure | None:
    intent = spec.intent.lower()
    for entry in config.rules.impossible_queries:
        if not any(p.lower() in intent for p in entry.patterns):
            continue
        if entry.context and not any(c.lower() in intent for c in entry.context):
            continue
        return RuleFailure(entry.reason, alternatives=list(entry.suggestions), impossible=True)
    return None


RULES: list[tuple[str, Rule]] = [
    ("confidence", check_confidence),
    ("structure", check_structure),
    ("time_range", check_time_range),
    ("metrics", check_metrics),
    ("dimensions", check_dimensions),
    ("filters", check_filters),
    ("limit", check_limit),
    ("possibility", check_possibility),
]


# ── Clarification conditions ─────────────────────────────

def _multiple_time_ranges(spec: QuerySpec, query: str, config: CapabilityConfig) -> bool:
    lower = query.lower()
    return sum(1 for term in config.rules.time_terms if term in lower) > 2


def _ambiguous_item(spec: QuerySpec, query: str, config: CapabilityConfig) -> bool:
    lower = query.lower()
    rules = config.rules
    # "top items", "best items" etc. are intentionally generic
    if "item" in lower and any(w in lower for w in rules.generic_item_words):
        return False
    return (
        any(ind in lower for ind in rules.item_indicators)
        and not has_specific_item_name(query, rules.specific_items)
    )


def _multiple_metrics(spec: QuerySpec, query: str, config: CapabilityConfig) -> bool:
    return len(spec.metrics) > 3


def _unclear_comparison(spec: QuerySpec, query: str, config: CapabilityConfig) -> bool:
    lower = query.lower()
    return "vs" in lower or "compare" in lower


CLARIFICATION_CONDITIONS: dict[str, Callable[[QuerySpec, str, CapabilityConfig], bool]] = {
    "multiple_time_ranges": _multiple_time_ranges,
    "ambiguous_item": _ambiguous_item,
    "multiple_metrics": _multiple_metrics,
    "unclear_comparison": _unclear_comparison,
}


# ── Validator ────────────────────────────────────────────

class CapabilityValidator:
    """Enforces the rulebook in *config*; holds no mutable state."""

    def __init__(self, config: CapabilityConfig, rules: list[tuple[str, Rule]] | None = None):
        self._config = config
        self._rules = rules if rules is not None else RULES

    @property
    def config(self) -> CapabilityConfig:
        return self._config

    def first_failure(self, spec: QuerySpec) -> RuleFailure | None:
        for name, rule in self._rules:
            failure = rule(spec, self._config)
            if failure is not None:
                logger.info("Validation failed at %s: %s", name, failure.reason)
                return failure
        return None

    def validate(self, spec: QuerySpec) -> ValidationResult:
        """Return ``{ok: true}`` or the first failing rule as ``{ok: false, ...}``."""
        try:
            failure = self.first_failure(spec)
        except Exception as exc:
            logger.exception("Unexpected error while validating spec")
            return ValidationResult.failure(
                f"Validation failed: {exc}",
                suggestions=["Please try rephrasing your query"],
            )
        if failure is None:
            return ValidationResult.success()
        return ValidationResult.failure(
            failure.reason,
            suggestions=failure.suggestions,
            alternatives=failure.alternatives,
        )

    def ensure_valid(self, spec: QuerySpec) -> None:
        """Raise ``ValidationError`` / ``ImpossibleQueryError`` for an invalid spec."""
        failure = self.first_failure(spec)
        if failure is None:
            return
        if failure.impossible:
            raise ImpossibleQueryError(failure.reason, failure.alternatives)
        raise ValidationError(failure.reason, failure.suggestions, failure.alternatives)

    def needs_clarification(self, spec: QuerySpec, original_query: str) -> Clarification | None:
        """Return the first configured trigger whose condition holds, else None."""
        for trigger in self._config.rules.clarification_triggers:
            condition = CLARIFICATION_CONDITIONS.get(trigger.condition)
            if condition is not None and condition(spec, original_query, self._config):
                logger.info("Clarification needed: %s", trigger.condition)
                return Clarification(
                    question=trigger.question,
                    options=list(trigger.options),
                    dynamic_options=trigger.dynamic_options,
                )
        return None
