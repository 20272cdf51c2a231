"""
Hybrid query processor -- parse → build → validate → (clarify | confirm | parsed)
locally, then a small structured call to the remote endpoint for SQL.

Queries the local pipeline is not suited for (follow-up refinements, very
long questions, nested and/or logic, explicit calculations) are routed to
the legacy full-context endpoint instead.

One processor is shared by every request of the API process; its public
coroutines are serialised with an ``asyncio.Lock`` so ``state`` always
describes the call that set it.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Sequence

from flipquery.core.config import Settings, get_settings
from flipquery.core.errors import (
    ImpossibleQueryError,
    ParsingError,
    UninitializedError,
    ValidationError,
)
from flipquery.core.logging import get_logger
from flipquery.core.utils import temporal_context, timer
from flipquery.governance.capabilities import CapabilityConfig, load_capability_config
from flipquery.governance.validator import CapabilityValidator
from flipquery.hybrid.cache import QueryCache, make_key
from flipquery.hybrid.intent_parser import IntentParser
from flipquery.hybrid.spec import (
    ClarificationContext,
    ClarifyOutcome,
    ConfirmOutcome,
    ConversationTurn,
    ErrorOutcome,
    FallbackOutcome,
    Filter,
    ImpossibleOutcome,
    MetricSpec,
    Outcome,
    ParsedOutcome,
    PresetRange,
    ProcessingState,
    QuerySpec,
)
from flipquery.hybrid.spec_builder import SpecBuilder
from flipquery.hybrid.sql_client import SQLEndpointClient

logger = get_logger(__name__)

_CLARIFY_TIME_PRESETS = [
    ("last 7 days", "last_7d"),
    ("last 30 days", "last_30d"),
    ("this month", "this_month"),
    ("all time", "all_time"),
]
_CLARIFY_METRICS = [
    ("total profit", [MetricSpec(metric="profit", op="sum")]),
    ("roi", [MetricSpec(metric="roi", op="avg")]),
    ("number of flips", [MetricSpec(metric="*", op="count")]),
]
_NOT_AN_ITEM = ("last ", "total ", "roi", "number of")
_ITEM_ANALYSIS_METRICS = [
    MetricSpec(metric="profit", op="sum"),
    MetricSpec(metric="roi", op="avg"),
    MetricSpec(metric="*", op="count"),
]

FALLBACK_SESSION_ID = "hybrid_fallback"


def build_structured_prompt(spec: QuerySpec, context: dict[str, Any] | None = None) -> dict[str, Any]:
    """The compact prompt sent with a hybrid request; never contains user text."""
    wire = spec.to_wire()
    prompt: dict[str, Any] = {
        "intent": wire.get("intent", ""),
        "metrics": wire.get("metrics", []),
        "dimensions": wire.get("dimensions", []),
        "filters": wire.get("filters", []),
        "timeRange": wire.get("timeRange"),
        "sort": wire.get("sort", []),
        "limit": wire.get("limit"),
        "includeColumns": wire.get("includeColumns", []),
    }
    if context and spec.time_range is not None:
        prompt["temporalContext"] = {
            "currentDate": context.get("currentDate"),
            "recentDays": context.get("recentDays"),
        }
    return prompt


class HybridQueryProcessor:
    """Coordinates local parsing/validation with remote SQL generation."""

    def __init__(
        self,
        config: CapabilityConfig | None = None,
        client: SQLEndpointClient | None = None,
        cache: QueryCache | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._config = config
        self._client = client or SQLEndpointClient()
        self._cache = cache or QueryCache(
            ttl=self._settings.sql_cache_ttl_seconds,
            max_size=self._settings.sql_cache_max_size,
        )
        self._parser: IntentParser | None = None
        self._builder: SpecBuilder | None = None
        self._validator: CapabilityValidator | None = None
        self._lock = asyncio.Lock()
        self._initialized = False
        self.state = ProcessingState.READY

        self._processed = 0
        self._outcomes: Counter[str] = Counter()
        self._fallbacks = 0
        self._remote_calls = 0
        self._cache_hits = 0
        self._local_ms_total = 0

    # ── Lifecycle ────────────────────────────────────────

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self._config is None:
            self._config = load_capability_config(self._settings.ai_config_dir)
        self._parser = IntentParser(self._config.patterns)
        await self._parser.initialize()
        self._builder = SpecBuilder(
            self._config.patterns,
            self._settings.auto_confirm_threshold,
            self._config.rules.limit_by_intent,
        )
        self._validator = CapabilityValidator(self._config)
        self._initialized = True
        logger.info("HybridQueryProcessor initialized")

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def validator(self) -> CapabilityValidator:
        self._require_initialized()
        return self._validator

    @property
    def builder(self) -> SpecBuilder:
        self._require_initialized()
        return self._builder

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise UninitializedError("HybridQueryProcessor not initialized")

    def get_state(self) -> ProcessingState:
        return self.state

    def reset(self) -> None:
        self.state = ProcessingState.READY

    # ── Structured pipeline ──────────────────────────────

    async def process_query(
        self, text: str, conversation_context: Sequence[ConversationTurn] | None = None,
    ) -> Outcome:
        self._require_initialized()
        async with self._lock:
            return self._process_query(text, list(conversation_context or []))

    def _process_query(self, text: str, conversation_context: list[ConversationTurn]) -> Outcome:
        self.state = ProcessingState.PARSING
        self._processed += 1
        try:
            with timer() as t:
                outcome = self._run_pipeline(text, conversation_context)
            self._local_ms_total += t["elapsed_ms"]
        except Exception as exc:
            if isinstance(exc, ParsingError):
                logger.warning("Local parsing failed: %s", exc)
            else:
                logger.exception("Query processing error")
            self.state = ProcessingState.ERROR
            outcome = ErrorOutcome(message=f"Failed to process query: {exc}", fallback_to_api=True)
        self._outcomes[outcome.type] += 1
        return outcome

    def _run_pipeline(self, text: str, conversation_context: list[ConversationTurn]) -> Outcome:
        parse_result = self._parser.parse_sync(text, conversation_context)
        spec = self._builder.build_spec(
            parse_result.intent, parse_result.components, parse_result.confidence, text,
        )

        self.state = ProcessingState.VALIDATING
        validation = self._validator.validate(spec)
        if not validation.ok:
            self.state = ProcessingState.IMPOSSIBLE
            return ImpossibleOutcome(
                reason=validation.reason or "Query cannot be answered",
                alternatives=validation.alternatives or validation.suggestions,
            )

        clarification = self._validator.needs_clarification(spec, text)
        if clarification is not None:
            self.state = ProcessingState.AWAITING_CLARIFICATION
            return ClarifyOutcome(
                question=clarification.question,
                options=clarification.options,
                context=ClarificationContext(spec=spec, parse_result=parse_result, original_query=text),
            )

        preview = self._builder.generate_preview(spec)
        if spec.requires_confirmation or parse_result.confidence < self._settings.auto_confirm_threshold:
            self.state = ProcessingState.AWAITING_CONFIRMATION
            return ConfirmOutcome(spec=spec, preview=preview, confidence=parse_result.confidence)

        self.state = ProcessingState.READY
        return ParsedOutcome(spec=spec, confidence=parse_result.confidence, preview=preview)

    async def generate_sql(self, confirmed_spec: QuerySpec, context: dict[str, Any] | None = None) -> str:
        """Re-validate *confirmed_spec* and ask the remote endpoint for SQL."""
        self._require_initialized()
        async with self._lock:
            self.state = ProcessingState.GENERATING_SQL
            try:
                self._validator.ensure_valid(confirmed_spec)
            except ImpossibleQueryError:
                self.state = ProcessingState.IMPOSSIBLE
                raise
            except ValidationError:
                self.state = ProcessingState.ERROR
                raise

            prompt = build_structured_prompt(confirmed_spec, context)
            key = make_key(prompt)
            cached = self._cache.get(key)
            if cached is not None:
                self._cache_hits += 1
                self.state = ProcessingState.READY
                logger.info("SQL cache hit for intent=%s", confirmed_spec.intent)
                return cached

            body = {
                "query": f"Hybrid Query: {confirmed_spec.intent}",
                "structuredSpec": confirmed_spec.to_wire(),
                "structuredPrompt": prompt,
                "isHybridQuery": True,
                "temporalContext": (
                    {
                        "currentDate": context.get("currentDate"),
                        "timezone": context.get("timezone"),
                        "recentDays": context.get("recentDays"),
                    }
                    if context else None
                ),
            }
            self._remote_calls += 1
            try:
                sql = await self._client.generate_hybrid(body)
            except Exception:
                logger.exception("SQL generation error")
                self.state = ProcessingState.ERROR
                raise

            self._cache.set(key, sql)
            self.state = ProcessingState.READY
            return sql

    # ── Clarification ────────────────────────────────────

    async def process_clarification_response(
        self, answer: str, context: ClarificationContext | dict[str, Any],
    ) -> Outcome:
        self._require_initialized()
        async with self._lock:
            try:
                if not isinstance(context, ClarificationContext):
                    context = ClarificationContext.model_validate(context)
                updated = apply_clarification(context.spec, answer, self._config.rules.generic_item_filters)

                validation = self._validator.validate(updated)
                if not validation.ok:
                    self.state = ProcessingState.IMPOSSIBLE
                    outcome = ImpossibleOutcome(
                        reason=validation.reason or "Query cannot be answered",
                        alternatives=validation.alternatives,
                    )
                else:
                    self.state = ProcessingState.AWAITING_CONFIRMATION
                    boosted = context.parse_result.confidence + self._settings.clarification_confidence_boost
                    confidence = round(min(1.0, boosted), 4)
                    updated = updated.model_copy(update={"confidence": confidence})
                    outcome = ConfirmOutcome(
                        spec=updated,
                        preview=self._builder.generate_preview(updated),
                        confidence=confidence,
                    )
            except Exception as exc:
                logger.exception("Clarification processing error")
                self.state = ProcessingState.ERROR
                outcome = ErrorOutcome(message=f"Failed to process clarification: {exc}")
            self._outcomes[outcome.type] += 1
            return outcome

    # ── Fallback controller ──────────────────────────────

    def is_refinement_query(self, query: str, conversation_context: Sequence[ConversationTurn] | None) -> bool:
        if not conversation_context:
            return False
        lower = query.lower()
        rules = self._config.rules if self._config else None
        phrases = rules.refinement_phrases if rules else ()
        short_terms = rules.short_refinement_terms if rules else ()

        if any(p in lower for p in phrases):
            return True
        return (
            len(query) < self._settings.refinement_short_query_length
            and any(t in lower for t in short_terms)
        )

    def should_fallback_to_api(
        self,
        query: str,
        error: BaseException | None = None,
        conversation_context: Sequence[ConversationTurn] | None = None,
    ) -> bool:
        if not self._initialized:
            return True
        if isinstance(error, ValidationError):
            return False
        if isinstance(error, ParsingError):
            return True
        if self.is_refinement_query(query, conversation_context):
            return True
        if len(query) > self._settings.fallback_max_query_length:
            return True
        if " and " in query and " or " in query:
            return True
        return any(term in query for term in self._config.rules.complex_terms)

    async def process_query_with_fallback(
        self,
        text: str,
        conversation_context: Sequence[ConversationTurn] | None = None,
    ) -> Outcome:
        self._require_initialized()
        turns = list(conversation_context or [])
        async with self._lock:
            if self.is_refinement_query(text, turns):
                logger.info("Refinement query detected, using legacy endpoint")
                return await self._fallback(text, turns)
            try:
                outcome = self._process_query(text, turns)
            except Exception as exc:
                if self.should_fallback_to_api(text, exc, turns):
                    logger.warning("Hybrid processing raised, falling back: %s", exc)
                    return await self._fallback(text, turns)
                raise
            if isinstance(outcome, ErrorOutcome) and outcome.fallback_to_api:
                logger.warning("Hybrid processing failed, falling back: %s", outcome.message)
                return await self._fallback(text, turns)
            return outcome

    async def fallback_to_original_api(
        self,
        text: str,
        conversation_context: Sequence[ConversationTurn] | None = None,
    ) -> FallbackOutcome:
        async with self._lock:
            return await self._fallback(text, list(conversation_context or []))

    async def _fallback(self, text: str, conversation_context: list[ConversationTurn]) -> FallbackOutcome:
        previous = conversation_context[-1] if conversation_context else None
        body = {
            "query": text,
            "previousQuery": previous.query if previous else None,
            "previousSQL": previous.sql if previous else None,
            "sessionId": FALLBACK_SESSION_ID,
            "isOwner": True,
            "temporalContext": temporal_context(tz=self._settings.timezone),
        }
        self._fallbacks += 1
        self._remote_calls += 1
        self.state = ProcessingState.GENERATING_SQL
        try:
            sql = await self._client.generate_legacy(body)
        except Exception:
            logger.exception("Fallback API call failed")
            self.state = ProcessingState.ERROR
            raise
        self.state = ProcessingState.READY
        self._outcomes["fallback_success"] += 1
        return FallbackOutcome(sql=sql)

    # ── Metrics ──────────────────────────────────────────

    def get_performance_metrics(self) -> dict[str, Any]:
        processed = self._processed
        return {
            "total_queries_processed": processed,
            "outcomes": dict(self._outcomes),
            "fallbacks": self._fallbacks,
            "remote_calls": self._remote_calls,
            "cache_hits": self._cache_hits,
            "average_local_response_ms": round(self._local_ms_total / processed, 2) if processed else 0.0,
            "fallback_rate": round(self._fallbacks / processed, 3) if processed else 0.0,
            "cache": self._cache.stats(),
        }


def apply_clarification(spec: QuerySpec, answer: str, generic_item_filters: Sequence[str] = ()) -> QuerySpec:
    """Merge a clarification answer into *spec*; returns a new spec."""
    lower = answer.lower()
    update: dict[str, Any] = {}

    for phrase, preset in _CLARIFY_TIME_PRESETS:
        if phrase in lower:
            update["time_range"] = PresetRange(preset=preset)
            break

    for phrase, metrics in _CLARIFY_METRICS:
        if phrase in lower:
            update["metrics"] = [m.model_copy() for m in metrics]
            break

    if answer and not any(marker in lower for marker in _NOT_AN_ITEM):
        filters = [
            f for f in spec.filters or []
            if not (f.field == "item" and f.value in generic_item_filters)
        ]
        filters.append(Filter(field="item", op="contains", value=lower))
        update.update(
            filters=filters,
            metrics=[m.model_copy() for m in _ITEM_ANALYSIS_METRICS],
            include_columns=None,
            dimensions=["item"],
            intent="item_analysis",
        )

    return spec.model_copy(update=update, deep=True)
