"""
Unit tests -- FastAPI routes with a processor whose SQL endpoint is mocked.
"""
import asyncio
import dataclasses
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from flipquery.api.deps import get_processor
from flipquery.api.main import app
from flipquery.hybrid.processor import HybridQueryProcessor
from flipquery.hybrid.sql_client import SQLEndpointClient

TOP_FLIPS = "Show me my top 10 most profitable flips"

VALID_SPEC = {
    "intent": "top_items_by_profit",
    "confidence": 0.9,
    "metrics": [{"metric": "profit", "op": "sum"}, {"metric": "*", "op": "count"}],
    "dimensions": ["item"],
    "limit": 10,
}


class Endpoint:
    def __init__(self):
        self.status = 200
        self.payload = {"sql": "SELECT item, SUM(profit) FROM flips GROUP BY item"}
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.status, json=self.payload)


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
def processor(config, endpoint) -> HybridQueryProcessor:
    client = SQLEndpointClient(url="http://sql.test/generate", timeout=2.0, transport=httpx.MockTransport(endpoint))
    p = HybridQueryProcessor(config=config, client=client)
    asyncio.run(p.initialize())
    return p


@pytest.fixture
def client(processor):
    app.dependency_overrides[get_processor] = lambda: processor
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ── Health / capabilities ────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_capabilities(client):
    resp = client.get("/capabilities")
    assert resp.status_code == 200
    data = resp.json()
    assert data["table"] == "flips"
    assert data["max_limit"] == 500
    assert "profit" in [m["name"] for m in data["metrics"]]
    assert "last_7d" in data["time_presets"]


def test_processor_missing_returns_503():
    with TestClient(app) as c:
        c.app.state.processor = None
        resp = c.get("/capabilities")
    assert resp.status_code == 503


# ── POST /query ──────────────────────────────────────────

def test_query_parsed(client, endpoint):
    resp = client.post("/query", json={"question": TOP_FLIPS})
    assert resp.status_code == 200
    data = resp.json()
    assert data["type"] == "parsed"
    assert data["state"] == "ready"
    assert data["spec"]["limit"] == 10
    assert endpoint.bodies == []


def test_query_too_long_rejected_before_processing(client, processor):
    resp = client.post("/query", json={"question": "x" * 501})
    assert resp.status_code == 422
    assert processor.get_performance_metrics()["total_queries_processed"] == 0


def test_query_too_short_rejected(client):
    assert client.post("/query", json={"question": "hi"}).status_code == 422


def test_question_bounds_follow_validation_rules(config, endpoint):
    rules = dataclasses.replace(config.rules, query_length_min=5, query_length_max=20)
    client = SQLEndpointClient(url="http://sql.test/generate", timeout=2.0, transport=httpx.MockTransport(endpoint))
    p = HybridQueryProcessor(config=dataclasses.replace(config, rules=rules), client=client)
    asyncio.run(p.initialize())
    app.dependency_overrides[get_processor] = lambda: p
    try:
        with TestClient(app) as c:
            too_long = c.post("/query", json={"question": "top items by profit!!"})
            too_short = c.post("/query", json={"question": "roi"})
            ok = c.post("/query", json={"question": "top items by profit"})
    finally:
        app.dependency_overrides.clear()

    assert too_long.status_code == 422
    assert too_long.json()["detail"] == "question must be 5-20 characters, got 21"
    assert too_short.status_code == 422
    assert ok.status_code == 200
    assert p.get_performance_metrics()["total_queries_processed"] == 1


def test_refinement_uses_fallback(client, endpoint):
    resp = client.post("/query", json={
        "question": "also show their roi",
        "conversation": [{"query": "top items by profit", "sql": "SELECT 1"}],
    })
    assert resp.status_code == 200
    assert resp.json()["type"] == "fallback_success"
    assert resp.json()["usedFallback"] is True
    assert endpoint.bodies[0]["previousSQL"] == "SELECT 1"


def test_fallback_failure_is_502(client, endpoint):
    endpoint.status = 503
    endpoint.payload = {"error": "endpoint down"}
    resp = client.post("/query", json={
        "question": "also show their roi",
        "conversation": [{"query": "top items by profit"}],
    })
    assert resp.status_code == 502
    assert resp.json()["detail"] == "endpoint down"


# ── POST /query/clarify ──────────────────────────────────

def test_clarify_round_trip(client):
    clarify = client.post("/query", json={"question": "weapon flips"}).json()
    assert clarify["type"] == "clarify"

    resp = client.post("/query/clarify", json={"answer": "whip", "context": clarify["context"]})
    assert resp.status_code == 200
    data = resp.json()
    assert data["type"] == "confirm"
    assert data["spec"]["intent"] == "item_analysis"


# ── POST /query/sql ──────────────────────────────────────

def test_sql_generated_then_cached(client, endpoint):
    first = client.post("/query/sql", json={"spec": VALID_SPEC})
    second = client.post("/query/sql", json={"spec": VALID_SPEC})

    assert first.status_code == 200
    assert first.json()["cached"] is False
    assert second.json() == {"sql": first.json()["sql"], "cached": True}
    assert len(endpoint.bodies) == 1


def test_sql_invalid_spec_is_422(client, endpoint):
    resp = client.post("/query/sql", json={"spec": {**VALID_SPEC, "metrics": []}})
    assert resp.status_code == 422
    assert resp.json()["detail"]["reason"] == "No metrics specified for analysis"
    assert endpoint.bodies == []


def test_sql_impossible_spec_is_422(client):
    resp = client.post("/query/sql", json={"spec": {**VALID_SPEC, "intent": "price_prediction"}})
    assert resp.status_code == 422
    assert resp.json()["detail"]["alternatives"]


def test_sql_endpoint_failure_is_502(client, endpoint):
    endpoint.status = 500
    endpoint.payload = {}
    resp = client.post("/query/sql", json={"spec": VALID_SPEC})
    assert resp.status_code == 502
    assert resp.json()["detail"] == "Failed to generate SQL"


# ── POST /query/run, GET /query/metrics ──────────────────

def test_run_refuses_writes(client):
    resp = client.post("/query/run", json={"sql": "DELETE FROM flips"})
    assert resp.status_code == 400
    assert "Only SELECT/WITH" in resp.json()["detail"]


def test_run_refuses_other_tables(client):
    resp = client.post("/query/run", json={"sql": "SELECT sqlite_version() AS v"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Query must read from flips"

    resp = client.post("/query/run", json={"sql": "SELECT name FROM sqlite_master"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Table not allowed: sqlite_master"


def test_metrics(client):
    client.post("/query", json={"question": TOP_FLIPS})
    resp = client.get("/query/metrics")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_queries_processed"] == 1
    assert data["outcomes"] == {"parsed": 1}
