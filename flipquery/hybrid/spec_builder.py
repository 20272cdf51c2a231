"""
Spec builder -- ParseResult components + a query pattern → QuerySpec.

Deterministic and side-effect free: the pattern's ``default_spec`` is
deep-copied and the parsed components are layered on top.  Also renders
the human-readable preview shown to the user before SQL is generated.
"""
from __future__ import annotations

import copy
from typing import Any, Mapping

from flipquery.core.config import get_settings
from flipquery.core.logging import get_logger
from flipquery.core.utils import similarity_score
from flipquery.governance.capabilities import QueryPattern, QueryPatterns
from flipquery.hybrid.spec import (
    ComparisonRange,
    DateRange,
    DayOfWeekRange,
    Filter,
    MetricSpec,
    ParsedComponents,
    ParsedFilter,
    PresetRange,
    QuerySpec,
    TimeRange,
)

logger = get_logger(__name__)

_EXAMPLE_SIMILARITY = 0.7

# ── Mapping tables ───────────────────────────────────────

# first keyword hit wins
_METRIC_PHRASES: list[tuple[tuple[str, ...], dict[str, str]]] = [
    (("profit",),                   {"metric": "profit", "op": "sum"}),
    (("roi", "return"),             {"metric": "roi", "op": "avg"}),
    (("count", "number", "flips"),  {"metric": "*", "op": "count"}),
    (("volume", "invested"),        {"metric": "volume", "op": "sum"}),
    (("time", "duration", "hold"),  {"metric": "avg_hold_time", "op": "avg"}),
]

_OPERATOR_MAP = {
    "greater than": ">", "more than": ">", "over": ">", "above": ">",
    "less than": "<", "under": "<", "below": "<",
    "equals": "=", "is": "=",
    "contains": "contains", "like": "contains",
    "not": "!=",
    "between": "between",
    "in": "in",
}

_FIELD_MAP = {
    "time": "flip_duration_minutes",
    "duration": "flip_duration_minutes",
    "hold_time": "flip_duration_minutes",
    "return": "roi",
    "percentage": "roi",
    "gp": "profit",
    "money": "profit",
    "earnings": "profit",
}

_NUMERIC_FIELDS = ("profit", "buy_price", "sell_price", "roi", "quantity")

_GENERIC_ANALYSIS = QueryPattern(
    key="generic_analysis",
    intent="analysis",
    examples=(),
    default_spec={
        "metrics": [{"metric": "profit", "op": "sum"}, {"metric": "*", "op": "count"}],
        "dimensions": ["item"],
    },
)
_GENERIC_SUMMARY = QueryPattern(
    key="generic_summary",
    intent="summary",
    examples=(),
    default_spec={"metrics": [{"metric": "profit", "op": "sum"}, {"metric": "roi", "op": "avg"}]},
)
_GENERIC = QueryPattern(
    key="generic",
    intent="generic",
    examples=(),
    default_spec={"metrics": [{"metric": "profit", "op": "sum"}], "dimensions": ["item"], "limit": 20},
)

# ── Preview display names ────────────────────────────────

_METRIC_NAMES = {
    "profit": "profit", "roi": "ROI", "flips": "flip count", "*": "flip count",
    "volume": "trading volume", "avg_hold_time": "average hold time", "weighted_roi": "weighted ROI",
}
_OPERATION_NAMES = {
    "sum": "total", "avg": "average", "count": "", "min": "minimum", "max": "maximum", "calculate": "calculated",
}
_DIMENSION_NAMES = {
    "item": "item", "date": "date", "account": "account", "hour": "hour",
    "weekday": "day of week", "time_period": "time period",
}
_PRESET_NAMES = {
    "last_7d": "last 7 days", "last_30d": "last 30 days", "this_week": "this week",
    "this_month": "this month", "last_month": "last month", "all_time": "all time",
}
_FIELD_NAMES = {
    "profit": "profit", "roi": "ROI", "item": "item", "account": "account",
    "buy_price": "buy price", "sell_price": "sell price", "flip_duration_minutes": "hold time",
}
_OPERATOR_NAMES = {
    ">": "greater than", ">=": "at least", "<": "less than", "<=": "at most",
    "=": "equals", "!=": "not equal to", "contains": "contains", "in": "in", "between": "between",
}


def parse_numeric_value(raw: str) -> float | int | None:
    """'1.5m' → 1500000, '100k' → 100000, '250gp' → 250; None if not a number."""
    text = raw.lower().replace(",", "").strip()
    multiplier = 1
    if text.endswith("gp"):
        text = text[:-2]
    elif text.endswith("k"):
        text, multiplier = text[:-1], 1_000
    elif text.endswith("m"):
        text, multiplier = text[:-1], 1_000_000
    try:
        value = float(text) * multiplier
    except ValueError:
        return None
    return int(value) if value.is_integer() else value


class SpecBuilder:
    """Builds QuerySpecs from parser output using the configured patterns."""

    def __init__(
        self,
        patterns: QueryPatterns,
        auto_confirm_threshold: float | None = None,
        default_limits: Mapping[str, int] | None = None,
    ):
        self._patterns = patterns
        self._default_limits = dict(default_limits or {})
        self._auto_confirm = (
            auto_confirm_threshold
            if auto_confirm_threshold is not None
            else get_settings().auto_confirm_threshold
        )

    # ── Building ─────────────────────────────────────────

    def build_spec(
        self,
        intent: str,
        components: ParsedComponents,
        confidence: float,
        original_query: str,
    ) -> QuerySpec:
        pattern = self.find_matching_pattern(intent, original_query)
        data: dict[str, Any] = copy.deepcopy(pattern.default_spec)
        data["intent"] = intent
        data["confidence"] = confidence

        if components.time_range is not None:
            data["time_range"] = components.time_range
        if components.metrics:
            data["metrics"] = self.build_metric_specs(components.metrics)
        if components.dimensions:
            data["dimensions"] = list(components.dimensions)
        if components.filters:
            data["filters"] = [f for f in (self.build_filter(c) for c in components.filters) if f]
        if components.limits:
            data["limit"] = components.limits
        if components.sort_by:
            data["sort"] = [{"by": components.sort_by, "order": components.sort_order}]

        filters: list[Any] = list(data.get("filters") or [])
        if pattern.requires_item_filter:
            filters.extend(Filter(field="item", op="contains", value=item) for item in components.items)

        mods = components.modifiers
        for excluded in mods.exclude or []:
            filters.append(Filter(field="item", op="!=", value=excluded))
        for category in mods.include or []:
            filters.append(Filter(field="item", op="contains", value=category))
        if mods.only_profitable and not any(
            _filter_key(f) == ("profit", ">", 0) for f in filters
        ):
            filters.append(Filter(field="profit", op=">", value=0))
        if filters:
            data["filters"] = filters

        if not data.get("limit") and intent in self._default_limits:
            data["limit"] = self._default_limits[intent]

        if not data.get("metrics"):
            data["metrics"] = [{"metric": "profit", "op": "sum"}]

        spec = QuerySpec.model_validate(data)
        if self.requires_confirmation(spec, confidence, original_query):
            spec = spec.model_copy(update={"requires_confirmation": True})

        logger.info(
            "Built spec intent=%s pattern=%s metrics=%d filters=%d limit=%s",
            intent, pattern.key, len(spec.metrics), len(spec.filters or []), spec.limit,
        )
        return spec

    def find_matching_pattern(self, intent: str, original_query: str) -> QueryPattern:
        exact = self._patterns.by_intent(intent)
        if exact is not None:
            return exact

        query = original_query.lower()
        for pattern in self._patterns.patterns:
            if any(similarity_score(query, ex.lower()) > _EXAMPLE_SIMILARITY for ex in pattern.examples):
                return pattern

        if "analysis" in intent or "performance" in intent:
            return _GENERIC_ANALYSIS
        if "summary" in intent or "total" in intent:
            return _GENERIC_SUMMARY
        return _GENERIC

    @staticmethod
    def build_metric_specs(metric_names: list[str]) -> list[MetricSpec]:
        specs: list[MetricSpec] = []
        for name in metric_names:
            lower = name.lower()
            for keywords, metric in _METRIC_PHRASES:
                if any(k in lower for k in keywords):
                    candidate = MetricSpec(**metric)
                    if candidate not in specs:
                        specs.append(candidate)
                    break
        return specs or [MetricSpec(metric="profit", op="sum")]

    @staticmethod
    def build_filter(component: ParsedFilter) -> Filter | None:
        op = _OPERATOR_MAP.get(component.operator.lower(), component.operator)
        if not op:
            logger.warning("Unknown filter operator: %r", component.operator)
            return None
        field = _FIELD_MAP.get(component.field.lower(), component.field)
        value = component.value
        if field in _NUMERIC_FIELDS and isinstance(value, str):
            parsed = parse_numeric_value(value)
            if parsed is not None:
                value = parsed
        return Filter(field=field, op=op, value=value)

    def requires_confirmation(self, spec: QuerySpec, confidence: float, original_query: str) -> bool:
        if confidence < self._auto_confirm:
            return True
        if spec.filters and len(spec.filters) > 3:
            return True
        if isinstance(spec.time_range, DateRange):
            return True
        if spec.limit and spec.limit > 100:
            return True
        return " vs " in original_query or "compare" in original_query

    # ── Preview ──────────────────────────────────────────

    def generate_preview(self, spec: QuerySpec) -> str:
        parts: list[str] = []
        item_filter = next((f for f in spec.filters or [] if f.field == "item"), None)

        if spec.intent == "item_analysis" and item_filter is not None:
            parts.append(f"Analyze {item_filter.value} flips")
            described = [d for d in (_describe_item_metric(m) for m in spec.metrics) if d.strip()]
            if described:
                parts.append(f"showing {', '.join(described)}")
        else:
            described = [d for d in (_describe_metric(m) for m in spec.metrics) if d.strip()]
            parts.append(f"Show {', '.join(described)}")
            if spec.dimensions:
                parts.append(f"grouped by {', '.join(_DIMENSION_NAMES.get(d, d) for d in spec.dimensions)}")

        if spec.time_range is not None:
            parts.append(f"for {_describe_time_range(spec.time_range)}")
        if spec.filters:
            parts.append(f"where {' and '.join(_describe_filter(f) for f in spec.filters)}")
        if spec.limit:
            parts.append(f"(showing top {spec.limit} results)")
        return " ".join(parts)


# ── Preview helpers ──────────────────────────────────────

def _filter_key(f: Any) -> tuple[str, str, Any]:
    if isinstance(f, Filter):
        return f.field, f.op, f.value
    return f.get("field"), f.get("op"), f.get("value")


def _describe_metric(m: MetricSpec) -> str:
    name = _METRIC_NAMES.get(m.metric, m.metric)
    op = _OPERATION_NAMES.get(m.op, m.op)
    if not op or name.startswith(op):
        return name
    return f"{op} {name}"


def _describe_item_metric(m: MetricSpec) -> str:
    if m.metric in ("flips", "*") and m.op == "count":
        return "flip count"
    if m.metric == "profit" and m.op == "sum":
        return "total profit"
    if m.metric == "roi" and m.op == "avg":
        return "average ROI"
    return _describe_metric(m).strip()


def _describe_time_range(tr: TimeRange) -> str:
    if isinstance(tr, PresetRange):
        return _PRESET_NAMES.get(tr.preset, tr.preset)
    if isinstance(tr, DateRange):
        return f"{tr.from_.isoformat()} to {tr.to.isoformat()}"
    if isinstance(tr, DayOfWeekRange):
        return f"{tr.day_of_week}s"
    if isinstance(tr, ComparisonRange):
        return tr.comparison.replace("_", " ")
    return "specified time period"


def _describe_value(value: Any, field: str) -> str:
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if is_number and field in ("profit", "buy_price", "sell_price"):
        return f"{value:,} GP"
    if is_number and field == "roi":
        return f"{value}%"
    if is_number and field == "flip_duration_minutes":
        hours, minutes = divmod(int(value), 60)
        return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"
    return str(value)


def _describe_filter(f: Filter) -> str:
    field = _FIELD_NAMES.get(f.field, f.field)
    op = _OPERATOR_NAMES.get(f.op, f.op)
    return f"{field} {op} {_describe_value(f.value, f.field)}"
