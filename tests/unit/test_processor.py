"""
Unit tests -- hybrid query processor: outcomes, clarification, fallback and SQL generation.

The remote endpoint is replaced with an httpx mock transport that records
every request body it receives.
"""
import asyncio
import json

import httpx
import pytest
from pydantic import TypeAdapter

from flipquery.core.errors import (
    ImpossibleQueryError,
    ParsingError,
    SQLGenerationError,
    UninitializedError,
    ValidationError,
)
from flipquery.hybrid.processor import (
    FALLBACK_SESSION_ID,
    HybridQueryProcessor,
    apply_clarification,
    build_structured_prompt,
)
from flipquery.hybrid.spec import (
    ClarifyOutcome,
    ConfirmOutcome,
    ConversationTurn,
    ErrorOutcome,
    FallbackOutcome,
    ImpossibleOutcome,
    Outcome,
    ParsedOutcome,
    PresetRange,
    ProcessingState,
    QuerySpec,
)
from flipquery.hybrid.sql_client import SQLEndpointClient

TOP_FLIPS = "Show me my top 10 most profitable flips"


class Endpoint:
    """Records request bodies and answers with a fixed status / payload."""

    def __init__(self, status: int = 200, payload: dict | None = None):
        self.status = status
        self.payload = payload if payload is not None else {"sql": "SELECT 1"}
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.status, json=self.payload)


def _processor(config, endpoint: Endpoint) -> HybridQueryProcessor:
    client = SQLEndpointClient(url="http://sql.test/generate", timeout=2.0, transport=httpx.MockTransport(endpoint))
    return HybridQueryProcessor(config=config, client=client)


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
def processor(config, endpoint) -> HybridQueryProcessor:
    p = _processor(config, endpoint)
    asyncio.run(p.initialize())
    return p


def _valid_spec(**overrides) -> QuerySpec:
    base = {
        "intent": "top_items_by_profit",
        "confidence": 0.9,
        "metrics": [{"metric": "profit", "op": "sum"}, {"metric": "*", "op": "count"}],
        "dimensions": ["item"],
        "limit": 10,
    }
    base.update(overrides)
    return QuerySpec.model_validate(base)


# ── Lifecycle ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_uninitialized_processor_raises(config, endpoint):
    p = _processor(config, endpoint)
    with pytest.raises(UninitializedError):
        await p.process_query(TOP_FLIPS)
    with pytest.raises(UninitializedError):
        await p.generate_sql(_valid_spec())
    assert p.should_fallback_to_api(TOP_FLIPS) is True


@pytest.mark.asyncio
async def test_initialize_is_idempotent(processor):
    await processor.initialize()
    assert processor.initialized is True
    assert processor.get_state() == ProcessingState.READY


# ── process_query outcomes ───────────────────────────────

@pytest.mark.asyncio
async def test_clear_query_is_parsed(processor, endpoint):
    outcome = await processor.process_query(TOP_FLIPS)
    assert isinstance(outcome, ParsedOutcome)
    assert outcome.spec.intent == "top_profitable_flips"
    assert outcome.spec.limit == 10
    assert outcome.confidence == 1.0
    assert outcome.preview.startswith("Show total profit")
    assert processor.get_state() == ProcessingState.READY
    assert endpoint.bodies == []


@pytest.mark.asyncio
async def test_forecast_is_impossible(processor):
    outcome = await processor.process_query("forecast profit next week")
    assert isinstance(outcome, ImpossibleOutcome)
    assert outcome.alternatives
    assert processor.get_state() == ProcessingState.IMPOSSIBLE


@pytest.mark.asyncio
async def test_vague_item_query_asks_for_clarification(processor):
    outcome = await processor.process_query("weapon flips")
    assert isinstance(outcome, ClarifyOutcome)
    assert outcome.question == "Which item did you mean?"
    assert "Abyssal whip" in outcome.options
    assert outcome.context.original_query == "weapon flips"
    assert processor.get_state() == ProcessingState.AWAITING_CLARIFICATION


@pytest.mark.asyncio
async def test_comparison_query_needs_confirmation(processor):
    outcome = await processor.process_query("weekend vs weekday profit")
    assert isinstance(outcome, (ConfirmOutcome, ClarifyOutcome))
    assert processor.get_state() in (
        ProcessingState.AWAITING_CONFIRMATION,
        ProcessingState.AWAITING_CLARIFICATION,
    )


@pytest.mark.asyncio
async def test_blank_query_is_an_error_with_fallback(processor):
    outcome = await processor.process_query("   ")
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.fallback_to_api is True
    assert outcome.message.startswith("Failed to process query")
    assert processor.get_state() == ProcessingState.ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ParsingError("unreadable"), RuntimeError("boom")])
async def test_pipeline_errors_become_error_outcomes(processor, monkeypatch, error):
    def explode(*args, **kwargs):
        raise error

    monkeypatch.setattr(processor._parser, "parse_sync", explode)
    outcome = await processor.process_query(TOP_FLIPS)
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.message == f"Failed to process query: {error}"
    assert outcome.fallback_to_api is True
    assert processor.get_state() == ProcessingState.ERROR


@pytest.mark.asyncio
async def test_outcomes_decode_through_outcome_union(processor):
    adapter = TypeAdapter(Outcome)
    for text in (TOP_FLIPS, "forecast profit next week", "weapon flips"):
        outcome = await processor.process_query(text)
        decoded = adapter.validate_python(outcome.model_dump(by_alias=True, mode="json"))
        assert type(decoded) is type(outcome)


# ── Clarification ────────────────────────────────────────

@pytest.mark.asyncio
async def test_item_answer_becomes_item_analysis(processor):
    clarify = await processor.process_query("weapon flips")
    outcome = await processor.process_clarification_response("whip", clarify.context)

    assert isinstance(outcome, ConfirmOutcome)
    assert outcome.spec.intent == "item_analysis"
    assert ("item", "contains", "whip") in [(f.field, f.op, f.value) for f in outcome.spec.filters]
    assert len(outcome.spec.metrics) == 3
    assert outcome.spec.dimensions == ["item"]
    assert outcome.spec.include_columns is None
    assert outcome.confidence == pytest.approx(0.6)
    assert outcome.spec.confidence == pytest.approx(0.6)
    assert processor.get_state() == ProcessingState.AWAITING_CONFIRMATION


@pytest.mark.asyncio
async def test_time_answer_sets_preset(processor):
    clarify = await processor.process_query("weapon flips")
    context = clarify.context.model_dump(by_alias=True, mode="json")
    outcome = await processor.process_clarification_response("Last 30 days", context)

    assert isinstance(outcome, ConfirmOutcome)
    assert outcome.spec.time_range == PresetRange(preset="last_30d")
    assert outcome.spec.intent == clarify.context.spec.intent


@pytest.mark.asyncio
async def test_malformed_clarification_context(processor):
    outcome = await processor.process_clarification_response("whip", {"spec": "nope"})
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.message.startswith("Failed to process clarification")
    assert processor.get_state() == ProcessingState.ERROR


def test_apply_clarification_replaces_generic_item_filter():
    spec = _valid_spec(filters=[{"field": "item", "op": "contains", "value": "weapon"}])
    updated = apply_clarification(spec, "Dragon scimitar", ["weapon", "armor", "food"])
    assert [(f.field, f.value) for f in updated.filters] == [("item", "dragon scimitar")]
    assert spec.filters[0].value == "weapon"


def test_apply_clarification_metric_answer():
    updated = apply_clarification(_valid_spec(), "Number of flips")
    assert [(m.metric, m.op) for m in updated.metrics] == [("*", "count")]
    assert updated.intent == "top_items_by_profit"


# ── Fallback decisions ───────────────────────────────────

PREVIOUS = [ConversationTurn(query="top items by profit", sql="SELECT item FROM flips")]


def test_refinement_needs_conversation(processor):
    assert processor.is_refinement_query("also show their roi", PREVIOUS) is True
    assert processor.is_refinement_query("also show their roi", []) is False
    assert processor.is_refinement_query("just the roi", PREVIOUS) is True


def test_fallback_precedence(processor):
    long_query = "profit " * 100
    assert processor.should_fallback_to_api(long_query, ValidationError("bad")) is False
    assert processor.should_fallback_to_api("top items", ParsingError("bad")) is True
    assert processor.should_fallback_to_api(long_query) is True
    assert processor.should_fallback_to_api("profit and roi or count") is True
    assert processor.should_fallback_to_api("calculate my margin") is True
    assert processor.should_fallback_to_api("top items by profit") is False


@pytest.mark.asyncio
async def test_refinement_goes_straight_to_fallback(processor, endpoint, monkeypatch):
    def explode(*args, **kwargs):
        raise AssertionError("local pipeline should not run")

    monkeypatch.setattr(processor.builder, "build_spec", explode)
    outcome = await processor.process_query_with_fallback("also show their roi", PREVIOUS)

    assert isinstance(outcome, FallbackOutcome)
    assert outcome.sql == "SELECT 1"
    body = endpoint.bodies[0]
    assert body["query"] == "also show their roi"
    assert body["previousQuery"] == "top items by profit"
    assert body["previousSQL"] == "SELECT item FROM flips"
    assert body["sessionId"] == FALLBACK_SESSION_ID
    assert body["isOwner"] is True
    assert "currentDate" in body["temporalContext"]


@pytest.mark.asyncio
async def test_parse_failure_falls_back(processor, endpoint):
    outcome = await processor.process_query_with_fallback("   ")
    assert isinstance(outcome, FallbackOutcome)
    assert endpoint.bodies[0]["previousQuery"] is None


@pytest.mark.asyncio
async def test_raised_parsing_error_falls_back(processor, endpoint, monkeypatch):
    def fail(text, turns):
        raise ParsingError("unusable", original_query=text)

    monkeypatch.setattr(processor, "_process_query", fail)
    outcome = await processor.process_query_with_fallback("profit by item")
    assert isinstance(outcome, FallbackOutcome)
    assert len(endpoint.bodies) == 1


@pytest.mark.asyncio
async def test_raised_validation_error_is_not_retried(processor, endpoint, monkeypatch):
    def fail(text, turns):
        raise ValidationError("bad spec")

    monkeypatch.setattr(processor, "_process_query", fail)
    with pytest.raises(ValidationError):
        await processor.process_query_with_fallback("profit by item")
    assert endpoint.bodies == []


@pytest.mark.asyncio
async def test_local_outcome_skips_fallback(processor, endpoint):
    outcome = await processor.process_query_with_fallback(TOP_FLIPS)
    assert isinstance(outcome, ParsedOutcome)
    assert endpoint.bodies == []


@pytest.mark.asyncio
async def test_fallback_failure_propagates(config):
    p = _processor(config, Endpoint(status=503, payload={"error": "down"}))
    await p.initialize()
    with pytest.raises(SQLGenerationError, match="down"):
        await p.fallback_to_original_api("anything")
    assert p.get_state() == ProcessingState.ERROR


# ── SQL generation ───────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_sql_sends_structured_payload_only(processor, endpoint):
    parsed = await processor.process_query(TOP_FLIPS)
    sql = await processor.generate_sql(parsed.spec)

    assert sql == "SELECT 1"
    body = endpoint.bodies[0]
    assert body["isHybridQuery"] is True
    assert body["query"] == "Hybrid Query: top_profitable_flips"
    assert body["structuredSpec"]["intent"] == "top_profitable_flips"
    assert body["temporalContext"] is None
    assert TOP_FLIPS.lower() not in json.dumps(body).lower()
    assert processor.get_state() == ProcessingState.READY


@pytest.mark.asyncio
async def test_generate_sql_uses_cache(processor, endpoint):
    spec = _valid_spec()
    first = await processor.generate_sql(spec)
    second = await processor.generate_sql(spec.model_copy(update={"confidence": 0.8}))

    assert first == second == "SELECT 1"
    assert len(endpoint.bodies) == 1
    assert processor.get_performance_metrics()["cache_hits"] == 1


@pytest.mark.asyncio
async def test_generate_sql_temporal_context(processor, endpoint):
    context = {"currentDate": "2024-01-15", "timezone": "UTC", "recentDays": {"lastMonday": "2024-01-08"}}
    await processor.generate_sql(_valid_spec(timeRange={"preset": "last_7d"}), context)

    body = endpoint.bodies[0]
    assert body["temporalContext"]["timezone"] == "UTC"
    assert body["structuredPrompt"]["temporalContext"]["currentDate"] == "2024-01-15"


@pytest.mark.asyncio
async def test_invalid_spec_never_reaches_endpoint(processor, endpoint):
    with pytest.raises(ValidationError):
        await processor.generate_sql(_valid_spec(metrics=[]))
    assert processor.get_state() == ProcessingState.ERROR

    with pytest.raises(ImpossibleQueryError):
        await processor.generate_sql(_valid_spec(intent="price_prediction"))
    assert processor.get_state() == ProcessingState.IMPOSSIBLE
    assert endpoint.bodies == []


@pytest.mark.asyncio
async def test_endpoint_failure_sets_error_state(config):
    p = _processor(config, Endpoint(status=500, payload={}))
    await p.initialize()
    with pytest.raises(SQLGenerationError, match="Failed to generate SQL"):
        await p.generate_sql(_valid_spec())
    assert p.get_state() == ProcessingState.ERROR


def test_structured_prompt_omits_context_without_time_range():
    prompt = build_structured_prompt(_valid_spec(), {"currentDate": "2024-01-15"})
    assert "temporalContext" not in prompt
    assert prompt["intent"] == "top_items_by_profit"
    assert prompt["limit"] == 10


# ── Concurrency ──────────────────────────────────────────

class SlowEndpoint:
    """Answers after a short sleep, logging when the request starts and ends."""

    def __init__(self, events: list):
        self.events = events

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.events.append("remote-start")
        await asyncio.sleep(0.05)
        self.events.append("remote-end")
        return httpx.Response(200, json={"sql": "SELECT 1"})


@pytest.mark.asyncio
async def test_overlapping_calls_are_serialised(config):
    events: list = []
    client = SQLEndpointClient(
        url="http://sql.test/generate", timeout=2.0, transport=httpx.MockTransport(SlowEndpoint(events)),
    )
    p = HybridQueryProcessor(config=config, client=client)
    await p.initialize()

    async def ask():
        outcome = await p.process_query("forecast profit next week")
        events.append(("query", outcome.type, p.get_state()))

    sql, _ = await asyncio.gather(p.generate_sql(_valid_spec()), ask())

    assert sql == "SELECT 1"
    assert events == ["remote-start", "remote-end", ("query", "impossible", ProcessingState.IMPOSSIBLE)]
    assert p.get_state() == ProcessingState.IMPOSSIBLE


# ── Metrics ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_performance_metrics(processor):
    await processor.process_query(TOP_FLIPS)
    await processor.process_query("forecast profit next week")
    await processor.fallback_to_original_api("anything")

    metrics = processor.get_performance_metrics()
    assert metrics["total_queries_processed"] == 2
    assert metrics["outcomes"] == {"parsed": 1, "impossible": 1, "fallback_success": 1}
    assert metrics["fallbacks"] == 1
    assert metrics["remote_calls"] == 1
    assert metrics["fallback_rate"] == 0.5
    assert metrics["cache"]["size"] == 0
