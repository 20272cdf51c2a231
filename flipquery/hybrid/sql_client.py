"""
Client for the remote SQL-generation endpoint.

Two request shapes share one endpoint:
  hybrid  -- a validated QuerySpec plus a compact structured prompt
  legacy  -- the raw question and previous turn, used as the fallback path

Every call carries an httpx timeout; timeouts, transport errors, non-2xx
responses and 2xx bodies without ``sql`` all surface as SQLGenerationError.
"""
from __future__ import annotations

from typing import Any

import httpx

from flipquery.core.config import get_settings
from flipquery.core.errors import SQLGenerationError
from flipquery.core.logging import get_logger

logger = get_logger(__name__)

HYBRID_DEFAULT_ERROR = "Failed to generate SQL"
LEGACY_DEFAULT_ERROR = "Fallback API call failed"


class SQLEndpointClient:
    """Thin async wrapper around ``POST {sql_endpoint_url}``.

    Parameters
    ----------
    url : str, optional
        Endpoint URL; defaults to ``settings.sql_endpoint_url``.
    timeout : float, optional
        Seconds before a request is abandoned.
    transport : httpx.AsyncBaseTransport, optional
        Injected transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.url = url or settings.sql_endpoint_url
        self.timeout = timeout if timeout is not None else settings.sql_endpoint_timeout_seconds
        self._transport = transport

    async def generate_hybrid(self, body: dict[str, Any]) -> str:
        return await self._post(body, HYBRID_DEFAULT_ERROR)

    async def generate_legacy(self, body: dict[str, Any]) -> str:
        return await self._post(body, LEGACY_DEFAULT_ERROR)

    async def _post(self, body: dict[str, Any], default_error: str) -> str:
        logger.info("POST %s (hybrid=%s)", self.url, bool(body.get("isHybridQuery")))
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            raise SQLGenerationError(f"SQL endpoint timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise SQLGenerationError(f"{default_error}: {exc}") from exc

        payload = _json_or_none(response)
        if not response.is_success:
            message = default_error
            if isinstance(payload, dict) and payload.get("error"):
                message = str(payload["error"])
            raise SQLGenerationError(message, status_code=response.status_code)

        if not isinstance(payload, dict) or not isinstance(payload.get("sql"), str):
            raise SQLGenerationError(f"{default_error}: response has no sql", status_code=response.status_code)

        sql = payload["sql"]
        logger.info("SQL endpoint returned %d chars", len(sql))
        return sql


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
