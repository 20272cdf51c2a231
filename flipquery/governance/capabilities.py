"""
Loads, checks, and caches the AI config documents into strongly-typed objects.

Three documents live in ``ai_config/`` (YAML; plain JSON also parses):

  capabilities.yml      engine features, flip table schema, metric catalog
  validation_rules.yml  bounds, whitelists, impossible queries, clarification
                        triggers, fallback heuristics
  query_patterns.yml    intent patterns, extraction tables, item vocabulary

Everything is checked once at load time; a malformed document raises
``ConfigError`` instead of failing later inside a validation rule.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from flipquery.core.config import get_settings
from flipquery.core.errors import ConfigError
from flipquery.core.logging import get_logger

logger = get_logger(__name__)

CAPABILITIES_FILE = "capabilities.yml"
VALIDATION_RULES_FILE = "validation_rules.yml"
QUERY_PATTERNS_FILE = "query_patterns.yml"

KNOWN_CLARIFICATION_CONDITIONS = frozenset(
    {"multiple_time_ranges", "ambiguous_item", "multiple_metrics", "unclear_comparison"}
)


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: str
    description: str = ""
    searchable: bool = False
    fuzzy: bool = False
    aggregatable: bool = False
    derived: bool = False
    calculation: str | None = None


@dataclass(frozen=True)
class MetricDef:
    name: str
    calculation: str
    display: str
    description: str = ""
    aggregations: tuple[str, ...] = ()


@dataclass(frozen=True)
class SqlEngine:
    name: str
    version: str
    supports: tuple[str, ...] = ()
    forbidden: tuple[str, ...] = ()


@dataclass(frozen=True)
class Capabilities:
    sql_engine: SqlEngine
    table: str
    columns: dict[str, ColumnDef]
    metrics: dict[str, MetricDef]

    def has_column(self, name: str) -> bool:
        return name in self.columns


@dataclass(frozen=True)
class ImpossiblePattern:
    patterns: tuple[str, ...]
    reason: str
    suggestions: tuple[str, ...] = ()
    context: tuple[str, ...] = ()


@dataclass(frozen=True)
class ClarificationTrigger:
    condition: str
    question: str
    options: tuple[str, ...] = ()
    dynamic_options: bool = False


@dataclass(frozen=True)
class ValidationRules:
    query_length_min: int
    query_length_max: int
    max_days: int
    valid_presets: tuple[str, ...]
    limit_max: int
    limit_default: int
    limit_by_intent: dict[str, int]
    confidence_min: float
    valid_metrics: tuple[str, ...]
    valid_operations: tuple[str, ...]
    valid_dimensions: tuple[str, ...]
    max_dimensions: int
    valid_operators: tuple[str, ...]
    max_filters: int
    filter_types: dict[str, tuple[str, ...]]
    impossible_queries: tuple[ImpossiblePattern, ...]
    clarification_triggers: tuple[ClarificationTrigger, ...]
    time_terms: tuple[str, ...]
    item_indicators: tuple[str, ...]
    generic_item_words: tuple[str, ...]
    specific_items: tuple[str, ...]
    generic_item_filters: tuple[str, ...]
    refinement_phrases: tuple[str, ...]
    short_refinement_terms: tuple[str, ...]
    complex_terms: tuple[str, ...]

    def field_type(self, field_name: str) -> str:
        for type_name, fields in self.filter_types.items():
            if field_name in fields:
                return type_name
        return "unknown"


@dataclass(frozen=True)
class QueryPattern:
    key: str
    intent: str
    examples: tuple[str, ...]
    default_spec: dict[str, Any]
    requires_item_filter: bool = False
    requires_time_comparison: bool = False
    requires_duration_filter: bool = False


@dataclass(frozen=True)
class RegexPattern:
    regex: re.Pattern
    group: int = 1
    multipliers: dict[str, float] = field(default_factory=dict)
    conversions: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtractionPatterns:
    time_ranges: dict[str, tuple[str, ...]]
    day_of_week: dict[str, tuple[str, ...]]
    time_comparisons: dict[str, tuple[str, ...]]
    profit_thresholds: tuple[RegexPattern, ...]
    roi_thresholds: tuple[RegexPattern, ...]
    duration_thresholds: tuple[RegexPattern, ...]
    limits: tuple[RegexPattern, ...]


@dataclass(frozen=True)
class ItemVocabulary:
    abbreviations: dict[str, str]
    name_patterns: dict[str, str]
    known_items: tuple[str, ...]


@dataclass(frozen=True)
class QueryPatterns:
    patterns: tuple[QueryPattern, ...]
    extraction: ExtractionPatterns
    items: ItemVocabulary

    def by_intent(self, intent: str) -> QueryPattern | None:
        for p in self.patterns:
            if p.intent == intent:
                return p
        return None


@dataclass(frozen=True)
class CapabilityConfig:
    """All three documents, loaded once and read-only afterwards."""

    capabilities: Capabilities
    rules: ValidationRules
    patterns: QueryPatterns


# ── Parsing helpers ──────────────────────────────────────

def _require(raw: dict[str, Any], key: str, where: str) -> Any:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(raw).__name__}")
    if key not in raw:
        raise ConfigError(f"{where}: missing required key '{key}'")
    return raw[key]


def _mapping(raw: Any, where: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(raw).__name__}")
    return raw


def _str_list(raw: Any, where: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        raise ConfigError(f"{where}: expected a list of strings")
    return tuple(raw)


def _number(raw: Any, where: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"{where}: expected a number, got {raw!r}")
    return raw


def _phrase_table(raw: Any, where: str) -> dict[str, tuple[str, ...]]:
    return {k: _str_list(v, f"{where}.{k}") for k, v in _mapping(raw, where).items()}


def _limit_table(raw: Any, default: int) -> dict[str, int]:
    """Intent -> default limit; a null entry takes limits.default."""
    return {
        intent: default if v is None else int(_number(v, f"rules.limits.by_intent.{intent}"))
        for intent, v in _mapping(raw, "rules.limits.by_intent").items()
    }


def _compile(regex: Any, where: str) -> re.Pattern:
    if not isinstance(regex, str):
        raise ConfigError(f"{where}: regex must be a string")
    try:
        return re.compile(regex, re.IGNORECASE)
    except re.error as exc:
        raise ConfigError(f"{where}: invalid regex {regex!r}: {exc}") from exc


def _regex_patterns(raw: Any, where: str) -> tuple[RegexPattern, ...]:
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: expected a list")
    out = []
    for i, entry in enumerate(raw):
        loc = f"{where}[{i}]"
        out.append(RegexPattern(
            regex=_compile(_require(entry, "regex", loc), loc),
            group=int(entry.get("group", 1)),
            multipliers={k: _number(v, f"{loc}.multipliers.{k}") for k, v in (entry.get("multipliers") or {}).items()},
            conversions={k: int(_number(v, f"{loc}.conversions.{k}")) for k, v in (entry.get("conversions") or {}).items()},
        ))
    return tuple(out)


# ── Document parsers ─────────────────────────────────────

def _parse_capabilities(raw: dict[str, Any]) -> Capabilities:
    engine_raw = _mapping(_require(raw, "sql_engine", "capabilities"), "capabilities.sql_engine")
    schema_raw = _mapping(_require(raw, "schema", "capabilities"), "capabilities.schema")
    columns_raw = _mapping(_require(schema_raw, "columns", "capabilities.schema"), "capabilities.schema.columns")

    columns: dict[str, ColumnDef] = {}
    for name, col in columns_raw.items():
        where = f"capabilities.schema.columns.{name}"
        columns[name] = ColumnDef(
            name=name,
            type=_require(col, "type", where),
            description=col.get("description", ""),
            searchable=bool(col.get("searchable", False)),
            fuzzy=bool(col.get("fuzzy", False)),
            aggregatable=bool(col.get("aggregatable", False)),
            derived=bool(col.get("derived", False)),
            calculation=col.get("calculation"),
        )

    metrics: dict[str, MetricDef] = {}
    for name, m in _mapping(raw.get("metrics") or {}, "capabilities.metrics").items():
        where = f"capabilities.metrics.{name}"
        metrics[name] = MetricDef(
            name=name,
            calculation=_require(m, "calculation", where),
            display=m.get("display", name),
            description=m.get("description", ""),
            aggregations=_str_list(m.get("aggregations"), f"{where}.aggregations"),
        )

    return Capabilities(
        sql_engine=SqlEngine(
            name=_require(engine_raw, "name", "capabilities.sql_engine"),
            version=str(engine_raw.get("version", "")),
            supports=_str_list(engine_raw.get("supports"), "capabilities.sql_engine.supports"),
            forbidden=_str_list(engine_raw.get("forbidden"), "capabilities.sql_engine.forbidden"),
        ),
        table=_require(schema_raw, "table", "capabilities.schema"),
        columns=columns,
        metrics=metrics,
    )


def _parse_rules(raw: dict[str, Any]) -> ValidationRules:
    rules = _mapping(_require(raw, "rules", "validation_rules"), "validation_rules.rules")
    qlen = _require(rules, "query_length", "rules")
    trange = _require(rules, "time_range", "rules")
    limits = _require(rules, "limits", "rules")
    conf = _require(rules, "confidence", "rules")
    metric_v = _require(raw, "metric_validation", "validation_rules")
    dim_v = _require(raw, "dimension_validation", "validation_rules")
    filter_v = _require(raw, "filter_validation", "validation_rules")
    terms = _mapping(_require(raw, "clarification_terms", "validation_rules"), "clarification_terms")
    fallback = _mapping(_require(raw, "fallback", "validation_rules"), "fallback")

    impossible = []
    for i, entry in enumerate(raw.get("impossible_queries") or []):
        where = f"impossible_queries[{i}]"
        impossible.append(ImpossiblePattern(
            patterns=_str_list(_require(entry, "patterns", where), f"{where}.patterns"),
            reason=_require(entry, "reason", where),
            suggestions=_str_list(entry.get("suggestions"), f"{where}.suggestions"),
            context=_str_list(entry.get("context"), f"{where}.context"),
        ))

    triggers = []
    for i, entry in enumerate(raw.get("clarification_triggers") or []):
        where = f"clarification_triggers[{i}]"
        condition = _require(entry, "condition", where)
        if condition not in KNOWN_CLARIFICATION_CONDITIONS:
            raise ConfigError(
                f"{where}: unknown condition '{condition}'. "
                f"Allowed: {', '.join(sorted(KNOWN_CLARIFICATION_CONDITIONS))}"
            )
        triggers.append(ClarificationTrigger(
            condition=condition,
            question=_require(entry, "question", where),
            options=_str_list(entry.get("options"), f"{where}.options"),
            dynamic_options=bool(entry.get("dynamic_options", False)),
        ))

    limit_default = int(_number(limits.get("default", 50), "rules.limits.default"))
    return ValidationRules(
        query_length_min=int(_number(_require(qlen, "min", "rules.query_length"), "rules.query_length.min")),
        query_length_max=int(_number(_require(qlen, "max", "rules.query_length"), "rules.query_length.max")),
        max_days=int(_number(_require(trange, "max_days", "rules.time_range"), "rules.time_range.max_days")),
        valid_presets=_str_list(_require(trange, "valid_presets", "rules.time_range"), "rules.time_range.valid_presets"),
        limit_max=int(_number(_require(limits, "max", "rules.limits"), "rules.limits.max")),
        limit_default=limit_default,
        limit_by_intent=_limit_table(limits.get("by_intent") or {}, limit_default),
        confidence_min=float(_number(_require(conf, "min_threshold", "rules.confidence"), "rules.confidence.min_threshold")),
        valid_metrics=_str_list(_require(metric_v, "valid_metrics", "metric_validation"), "metric_validation.valid_metrics"),
        valid_operations=_str_list(_require(metric_v, "valid_operations", "metric_validation"), "metric_validation.valid_operations"),
        valid_dimensions=_str_list(_require(dim_v, "valid_dimensions", "dimension_validation"), "dimension_validation.valid_dimensions"),
        max_dimensions=int(_number(_require(dim_v, "max_dimensions", "dimension_validation"), "dimension_validation.max_dimensions")),
        valid_operators=_str_list(_require(filter_v, "valid_operators", "filter_validation"), "filter_validation.valid_operators"),
        max_filters=int(_number(_require(filter_v, "max_filters", "filter_validation"), "filter_validation.max_filters")),
        filter_types=_phrase_table(_require(filter_v, "filter_types", "filter_validation"), "filter_validation.filter_types"),
        impossible_queries=tuple(impossible),
        clarification_triggers=tuple(triggers),
        time_terms=_str_list(terms.get("time_terms"), "clarification_terms.time_terms"),
        item_indicators=_str_list(terms.get("item_indicators"), "clarification_terms.item_indicators"),
        generic_item_words=_str_list(terms.get("generic_item_words"), "clarification_terms.generic_item_words"),
        specific_items=_str_list(terms.get("specific_items"), "clarification_terms.specific_items"),
        generic_item_filters=_str_list(terms.get("generic_item_filters"), "clarification_terms.generic_item_filters"),
        refinement_phrases=_str_list(fallback.get("refinement_phrases"), "fallback.refinement_phrases"),
        short_refinement_terms=_str_list(fallback.get("short_refinement_terms"), "fallback.short_refinement_terms"),
        complex_terms=_str_list(fallback.get("complex_terms"), "fallback.complex_terms"),
    )


def _parse_patterns(raw: dict[str, Any]) -> QueryPatterns:
    patterns = []
    for key, p in _mapping(_require(raw, "patterns", "query_patterns"), "query_patterns.patterns").items():
        where = f"patterns.{key}"
        default_spec = _mapping(_require(p, "default_spec", where), f"{where}.default_spec")
        if not default_spec.get("metrics"):
            raise ConfigError(f"{where}.default_spec: metrics must be a non-empty list")
        patterns.append(QueryPattern(
            key=key,
            intent=_require(p, "intent", where),
            examples=_str_list(_require(p, "examples", where), f"{where}.examples"),
            default_spec=default_spec,
            requires_item_filter=bool(p.get("requires_item_filter", False)),
            requires_time_comparison=bool(p.get("requires_time_comparison", False)),
            requires_duration_filter=bool(p.get("requires_duration_filter", False)),
        ))

    ex = _mapping(_require(raw, "extraction_patterns", "query_patterns"), "extraction_patterns")
    extraction = ExtractionPatterns(
        time_ranges=_phrase_table(_require(ex, "time_ranges", "extraction_patterns"), "extraction_patterns.time_ranges"),
        day_of_week=_phrase_table(_require(ex, "day_of_week", "extraction_patterns"), "extraction_patterns.day_of_week"),
        time_comparisons=_phrase_table(_require(ex, "time_comparisons", "extraction_patterns"), "extraction_patterns.time_comparisons"),
        profit_thresholds=_regex_patterns(ex.get("profit_thresholds") or [], "extraction_patterns.profit_thresholds"),
        roi_thresholds=_regex_patterns(ex.get("roi_thresholds") or [], "extraction_patterns.roi_thresholds"),
        duration_thresholds=_regex_patterns(ex.get("duration_thresholds") or [], "extraction_patterns.duration_thresholds"),
        limits=_regex_patterns(ex.get("limits") or [], "extraction_patterns.limits"),
    )

    items_raw = _mapping(raw.get("items") or {}, "query_patterns.items")
    items = ItemVocabulary(
        abbreviations={str(k).lower(): str(v).lower() for k, v in (items_raw.get("abbreviations") or {}).items()},
        name_patterns={str(k).lower(): str(v).lower() for k, v in (items_raw.get("name_patterns") or {}).items()},
        known_items=_str_list(items_raw.get("known_items"), "items.known_items"),
    )
    return QueryPatterns(patterns=tuple(patterns), extraction=extraction, items=items)


def _read(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config document not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config document {path} is not valid YAML/JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config document {path} must contain a mapping at top level")
    return raw


# ── Public API ───────────────────────────────────────────

def parse_config(
    capabilities: dict[str, Any],
    rules: dict[str, Any],
    patterns: dict[str, Any],
) -> CapabilityConfig:
    """Build a CapabilityConfig from already-decoded documents."""
    return CapabilityConfig(
        capabilities=_parse_capabilities(capabilities),
        rules=_parse_rules(rules),
        patterns=_parse_patterns(patterns),
    )


def load_capability_config(config_dir: Path | str | None = None) -> CapabilityConfig:
    """Read and check the three documents from *config_dir* (default: settings)."""
    directory = Path(config_dir) if config_dir else Path(get_settings().ai_config_dir)
    config = parse_config(
        _read(directory / CAPABILITIES_FILE),
        _read(directory / VALIDATION_RULES_FILE),
        _read(directory / QUERY_PATTERNS_FILE),
    )
    logger.info(
        "Loaded AI config from %s: %d columns, %d patterns, %d clarification triggers",
        directory,
        len(config.capabilities.columns),
        len(config.patterns.patterns),
        len(config.rules.clarification_triggers),
    )
    return config


@lru_cache
def load_default_config() -> CapabilityConfig:
    """Load and cache the config from the settings directory."""
    return load_capability_config()
