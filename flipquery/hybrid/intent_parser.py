"""
Intent parser -- turns a flip-history question into a ParseResult.

Purely rule based: component extraction uses the keyword tables below plus
the extraction patterns from ``query_patterns.yml``; intent classification
scores every configured pattern's examples against the query and falls back
to keyword rules when nothing scores well.
"""
from __future__ import annotations

import re
from typing import Any

from flipquery.core.errors import ParsingError, UninitializedError
from flipquery.core.logging import get_logger
from flipquery.core.utils import levenshtein_distance
from flipquery.governance.capabilities import QueryPattern, QueryPatterns, load_default_config
from flipquery.hybrid.items import extract_item_hints
from flipquery.hybrid.spec import (
    ComparisonRange,
    ConversationTurn,
    DateRange,
    DayOfWeekRange,
    Modifiers,
    ParsedComponents,
    ParsedFilter,
    ParseResult,
    PresetRange,
    TimeRange,
)

logger = get_logger(__name__)

_MIN_PATTERN_SCORE = 0.5

# ── Keyword tables ───────────────────────────────────────

_METRIC_KEYWORDS: dict[str, list[str]] = {
    "profit":        ["profit", "money", "gp", "earnings"],
    "roi":           ["roi", "return", "percentage", "%"],
    "flips":         ["count", "number", "how many", "flips"],
    "volume":        ["volume", "invested", "spent"],
    "avg_hold_time": ["time", "duration", "hold", "held"],
}

_DIMENSION_KEYWORDS: dict[str, list[str]] = {
    "item":        ["by item", "per item", "each item"],
    "date":        ["by date", "daily", "per day", "each day"],
    "account":     ["by account", "per account", "each account"],
    "time_period": ["vs", "compare", "versus"],
}

_SORT_KEYWORDS: list[tuple[str, list[str]]] = [
    ("roi",                   ["sort by roi", "by roi", "highest roi", "best roi"]),
    ("profit",                ["sort by profit", "by profit", "most profitable", "least profitable"]),
    ("date",                  ["sort by date", "by date", "most recent"]),
    ("flip_duration_minutes", ["sort by time", "sort by duration", "longest"]),
    ("count",                 ["sort by count", "most flips", "most traded"]),
]

_ASCENDING_WORDS = ("ascending", "lowest", "smallest", "least")

_PROFITABLE_WORDS = ("profitable", "positive", "successful")
_LOSS_WORDS = ("loss", "negative", "losing")

_DATE_RANGE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})\s*(?:to|through|until)\s*(\d{4}-\d{2}-\d{2})")
_EXCLUDE_RE = re.compile(r"\b(?:exclude|excluding|without|no)\s+(ammo|armou?r|weapons?|food|potions?)\b")
_INCLUDE_RE = re.compile(r"\bonly\s+(weapons?|armou?r|food|potions?)\b")
_AMOUNT_SUFFIX_RE = re.compile(r"^([\d.]+)\s*([kmb]?)$")

_CATEGORY_SINGULAR = {
    "weapons": "weapon", "armour": "armor", "potions": "potion",
}

_QUESTION_OPENERS = ("show me", "what", "how")


def _category(word: str) -> str:
    return _CATEGORY_SINGULAR.get(word, word)


def _parse_amount(raw: str, multipliers: dict[str, float]) -> float | None:
    m = _AMOUNT_SUFFIX_RE.match(raw.replace(",", "").strip().lower())
    if not m:
        return None
    try:
        value = float(m.group(1))
    except ValueError:
        return None
    suffix = m.group(2)
    if suffix:
        value *= multipliers.get(suffix, 1)
    return int(value) if value.is_integer() else value


# ── Parser ───────────────────────────────────────────────

class IntentParser:
    """Rule-based NL → ParseResult.  Call ``initialize()`` once before parsing."""

    def __init__(self, patterns: QueryPatterns | None = None):
        self._patterns = patterns
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._patterns is None:
            self._patterns = load_default_config().patterns
        self._initialized = True
        logger.info("IntentParser ready with %d patterns", len(self._patterns.patterns))

    @property
    def patterns(self) -> QueryPatterns:
        if not self._initialized or self._patterns is None:
            raise UninitializedError("IntentParser not initialized")
        return self._patterns

    async def parse(
        self,
        text: str,
        conversation_context: list[ConversationTurn] | None = None,
    ) -> ParseResult:
        return self.parse_sync(text, conversation_context)

    def parse_sync(
        self,
        text: str,
        conversation_context: list[ConversationTurn] | None = None,
    ) -> ParseResult:
        if not text or not text.strip():
            raise ParsingError("Query is empty", original_query=text or "")

        patterns = self.patterns
        normalized = " ".join(text.lower().split())
        try:
            components = self.extract_components(normalized)
            intent, score = self.classify_intent(normalized, components)
        except ParsingError:
            raise
        except Exception as exc:
            raise ParsingError(f"Could not parse query: {exc}", original_query=text) from exc

        confidence = self._confidence(score, components, normalized)
        logger.info(
            "Parsed intent=%s confidence=%.2f (patterns=%d, turns=%d)",
            intent, confidence, len(patterns.patterns), len(conversation_context or []),
        )
        return ParseResult(
            intent=intent,
            components=components,
            confidence=confidence,
            original_query=text,
            normalized_query=normalized,
        )

    # ── Component extraction ─────────────────────────────

    def extract_components(self, query: str) -> ParsedComponents:
        sort_by, sort_order = self._sort(query)
        return ParsedComponents(
            time_range=self._time_range(query),
            items=extract_item_hints(query, self.patterns.items),
            metrics=[m for m, kws in _METRIC_KEYWORDS.items() if any(k in query for k in kws)],
            dimensions=[d for d, kws in _DIMENSION_KEYWORDS.items() if any(k in query for k in kws)],
            filters=self._filters(query),
            limits=self._limit(query),
            sort_by=sort_by,
            sort_order=sort_order,
            modifiers=self._modifiers(query),
        )

    def _time_range(self, query: str) -> TimeRange | None:
        extraction = self.patterns.extraction

        for preset, phrases in extraction.time_ranges.items():
            if any(p in query for p in phrases):
                return PresetRange(preset=preset)

        for day, phrases in extraction.day_of_week.items():
            for phrase in phrases:
                if f"last {phrase}" in query:
                    return DayOfWeekRange(day_of_week=day, specific=True)
                if f"{phrase} flips" in query or f"{phrase}s" in query:
                    return DayOfWeekRange(day_of_week=day, specific=False)

        for comparison, phrases in extraction.time_comparisons.items():
            if any(p in query for p in phrases):
                return ComparisonRange(comparison=comparison)

        m = _DATE_RANGE_RE.search(query)
        if m:
            try:
                return DateRange.model_validate({"from": m.group(1), "to": m.group(2)})
            except ValueError:
                logger.warning("Ignoring unparseable date range %r", m.group(0))
        return None

    def _filters(self, query: str) -> list[ParsedFilter]:
        extraction = self.patterns.extraction
        filters: list[ParsedFilter] = []

        for pattern in extraction.profit_thresholds:
            m = pattern.regex.search(query)
            if m:
                amount = _parse_amount(m.group(pattern.group), pattern.multipliers)
                if amount is not None:
                    filters.append(ParsedFilter(field="profit", operator=">", value=amount))
                    break

        for pattern in extraction.roi_thresholds:
            m = pattern.regex.search(query)
            if m:
                filters.append(ParsedFilter(field="roi", operator=">", value=int(m.group(pattern.group))))
                break

        for pattern in extraction.duration_thresholds:
            m = pattern.regex.search(query)
            if m:
                amount = int(m.group(1))
                unit = m.group(2).lower()
                minutes = amount * pattern.conversions.get(unit, 1)
                filters.append(ParsedFilter(field="flip_duration_minutes", operator=">", value=minutes))
                break

        if not any(f.field == "profit" for f in filters):
            if any(w in query for w in _PROFITABLE_WORDS):
                filters.append(ParsedFilter(field="profit", operator=">", value=0))
            elif any(w in query for w in _LOSS_WORDS):
                filters.append(ParsedFilter(field="profit", operator="<", value=0))

        return filters

    def _limit(self, query: str) -> int | None:
        for pattern in self.patterns.extraction.limits:
            m = pattern.regex.search(query)
            if m:
                return int(m.group(pattern.group))
        return None

    @staticmethod
    def _sort(query: str) -> tuple[str | None, str]:
        order = "asc" if any(w in query for w in _ASCENDING_WORDS) else "desc"
        for field, phrases in _SORT_KEYWORDS:
            if any(p in query for p in phrases):
                return field, order
        return None, order

    @staticmethod
    def _modifiers(query: str) -> Modifiers:
        exclude = [_category(w) for w in _EXCLUDE_RE.findall(query)]
        include = [_category(w) for w in _INCLUDE_RE.findall(query)]
        return Modifiers(
            exclude=exclude or None,
            include=include or None,
            only_profitable="only profitable" in query,
        )

    # ── Intent classification ────────────────────────────

    def classify_intent(self, query: str, components: ParsedComponents) -> tuple[str, float]:
        best: QueryPattern | None = None
        best_score = 0.0
        for pattern in self.patterns.patterns:
            score = self._pattern_score(query, pattern, components)
            if score > best_score:
                best, best_score = pattern, score

        if best is None or best_score < _MIN_PATTERN_SCORE:
            return self._fallback_intent(query, components)
        return best.intent, best_score

    def _pattern_score(self, query: str, pattern: QueryPattern, components: ParsedComponents) -> float:
        checks: list[float] = [max((self._example_match(query, ex) for ex in pattern.examples), default=0.0)]
        if pattern.requires_item_filter:
            checks.append(1.0 if components.items else 0.0)
        if pattern.requires_time_comparison:
            checks.append(1.0 if isinstance(components.time_range, ComparisonRange) else 0.0)
        if pattern.requires_duration_filter:
            checks.append(1.0 if any(f.field == "flip_duration_minutes" for f in components.filters) else 0.0)
        return sum(checks) / len(checks)

    @staticmethod
    def _example_match(query: str, example: str) -> float:
        query_words = query.split()
        example_words = example.lower().split()
        if not query_words or not example_words:
            return 0.0

        overlap = sum(
            1 for word in query_words
            if any(
                word in ex or ex in word or levenshtein_distance(word, ex) <= 1
                for ex in example_words
            )
        )
        ratio = overlap / max(len(query_words), len(example_words))

        example = example.lower()
        if "top" in example and "top" in query:
            return min(1.0, ratio + 0.3)
        if "profit" in example and "profit" in query:
            return min(1.0, ratio + 0.2)
        if "best" in example and ("best" in query or "most" in query):
            return min(1.0, ratio + 0.2)
        return ratio

    @staticmethod
    def _fallback_intent(query: str, components: ParsedComponents) -> tuple[str, float]:
        if any(w in query for w in ("top", "best", "most")):
            if "profit" in query:
                return "top_items_by_profit", 0.7
            if "roi" in query:
                return "roi_analysis", 0.7
        if any(w in query for w in ("recent", "latest", "last")):
            return "recent_activity", 0.6
        if any(w in query for w in ("vs", "compare", "versus")):
            return "time_comparison", 0.8
        if "account" in query:
            return "account_comparison", 0.7
        if components.items:
            return "item_performance", 0.6
        return "profit_analysis", 0.5

    @staticmethod
    def _confidence(score: float, components: ParsedComponents, query: str) -> float:
        confidence = score
        boosts: dict[str, Any] = {
            "items": components.items,
            "time_range": components.time_range,
            "metrics": components.metrics,
            "limit": components.limits,
        }
        confidence += 0.1 * sum(1 for v in boosts.values() if v)
        if len(query) < 10:
            confidence -= 0.2
        if len(query.split()) < 3:
            confidence -= 0.1
        if any(opener in query for opener in _QUESTION_OPENERS):
            confidence += 0.05
        return round(max(0.0, min(1.0, confidence)), 4)
