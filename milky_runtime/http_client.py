"""
Outbound HTTP API path.

Thin wrapper around ``httpx`` that posts one action per request to
``{http_endpoint}/api/{action}`` and returns the decoded JSON body.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from milky_runtime.decoder import ResponseFrame, decode
from milky_runtime.errors import ApiHttpError, MalformedFrameError, TransportError
from milky_runtime.types import ApiRequest

logger = logging.getLogger(__name__)


class ApiHttpClient:
    """Posts API actions to the backend over HTTP."""

    def __init__(
        self,
        http_endpoint: str,
        access_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = http_endpoint.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def post_action(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        _retries: int = 2,
        _attempt: int = 0,
    ) -> dict[str, Any]:
        """Post ``params`` to ``/api/{action}`` and return the JSON body.

        Retries on 429 with exponential backoff (1s, 2s, jittered).
        """
        response = await self._client.post(f"/api/{action}", json=params or {})

        if response.status_code == 429 and _retries > 0:
            retry_after = float(response.headers.get("retry-after", "0"))
            delay = max(retry_after, min(2 ** _attempt, 30))
            delay *= 0.8 + random.random() * 0.4
            logger.info(
                "Rate limited (429) on %s; retrying in %.1fs (attempt %d/%d)",
                action, delay, _attempt + 1, _attempt + _retries,
            )
            await asyncio.sleep(delay)
            return await self.post_action(action, params, _retries - 1, _attempt + 1)

        # Don't put the whole body into the exception; it may echo params back.
        if response.status_code >= 400:
            message = response.reason_phrase or "Request failed"
            try:
                err_data = response.json()
                if isinstance(err_data, dict):
                    message = str(err_data.get("message", err_data.get("error", message)))
            except ValueError:
                pass
            raise ApiHttpError(response.status_code, message)

        if response.status_code == 204 or not response.content:
            return {}

        data = response.json()
        if not isinstance(data, dict):
            raise ApiHttpError(response.status_code, "Response body is not a JSON object")
        return data

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, request: ApiRequest) -> ResponseFrame:
        """Post ``request`` and decode the reply as its response frame.

        HTTP already pairs request and response, so the request's echo is
        stamped onto the body before decoding.

        Raises:
            ApiHttpError: Non-success HTTP status.
            DecodeError: The body is not a response envelope.
            TransportError: The request never completed.
        """
        try:
            body = await self.post_action(request.action, request.params)
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request for {request.action} failed: {e}") from e
        body["echo"] = request.echo
        frame = decode(body)
        if not isinstance(frame, ResponseFrame):
            raise MalformedFrameError(f"Unexpected response body for {request.action}", body)
        return frame
