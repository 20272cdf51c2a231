"""
Unit tests -- SQL endpoint client against an httpx mock transport.
"""
import json

import httpx
import pytest

from flipquery.core.errors import SQLGenerationError
from flipquery.hybrid.sql_client import (
    HYBRID_DEFAULT_ERROR,
    LEGACY_DEFAULT_ERROR,
    SQLEndpointClient,
)

URL = "http://sql.test/api/generate-sql"


def _client(handler) -> SQLEndpointClient:
    return SQLEndpointClient(url=URL, timeout=2.0, transport=httpx.MockTransport(handler))


# ── Success ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_returns_sql_and_posts_json_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"sql": "SELECT 1"})

    sql = await _client(handler).generate_hybrid({"isHybridQuery": True, "spec": {"intent": "x"}})
    assert sql == "SELECT 1"
    assert seen["url"] == URL
    assert seen["body"]["isHybridQuery"] is True


# ── Error responses ──────────────────────────────────────

@pytest.mark.asyncio
async def test_error_body_message_used():
    client = _client(lambda request: httpx.Response(400, json={"error": "Unknown metric"}))
    with pytest.raises(SQLGenerationError) as exc_info:
        await client.generate_hybrid({})
    assert str(exc_info.value) == "Unknown metric"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_default_messages_without_error_body():
    client = _client(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(SQLGenerationError, match=HYBRID_DEFAULT_ERROR):
        await client.generate_hybrid({})
    with pytest.raises(SQLGenerationError, match=LEGACY_DEFAULT_ERROR):
        await client.generate_legacy({})


@pytest.mark.asyncio
async def test_success_without_sql_is_an_error():
    client = _client(lambda request: httpx.Response(200, json={"explanation": "no sql"}))
    with pytest.raises(SQLGenerationError, match="response has no sql"):
        await client.generate_hybrid({})


# ── Transport failures ───────────────────────────────────

@pytest.mark.asyncio
async def test_timeout_reported():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(SQLGenerationError, match="timed out after 2.0s"):
        await _client(handler).generate_hybrid({})


@pytest.mark.asyncio
async def test_connection_error_reported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SQLGenerationError) as exc_info:
        await _client(handler).generate_legacy({})
    assert str(exc_info.value).startswith(LEGACY_DEFAULT_ERROR)
    assert exc_info.value.status_code is None
