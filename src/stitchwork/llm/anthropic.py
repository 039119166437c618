"""Blocking client for the Anthropic Messages API."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from stitchwork.errors import ExternalApiError, TransientJobError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_API_VERSION = "2023-06-01"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2


class LlmClient(Protocol):
    def create_message(self, request: dict[str, Any]) -> dict[str, Any]:
        """Send one Messages API request body and return the decoded response body."""
        ...


class AnthropicClient:
    """httpx wrapper posting to ``/v1/messages`` with connection retries and timeouts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "x-api-key": api_key,
                "anthropic-version": api_version,
                "content-type": "application/json",
            },
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def create_message(self, request: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self._client.post("/v1/messages", json=request)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling Messages API")
            raise TransientJobError(f"LLM request timed out: {error}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error calling Messages API: %s", error)
            raise TransientJobError(f"LLM request failed: {error}") from error

        if not response.is_success:
            raise ExternalApiError(response.status_code, response.text)
        try:
            body = response.json()
        except ValueError as error:
            raise ExternalApiError(response.status_code, response.text) from error
        if not isinstance(body, dict):
            raise ExternalApiError(response.status_code, response.text)
        usage = body.get("usage") or {}
        logger.debug(
            "Messages API %s: stop_reason=%s input_tokens=%s output_tokens=%s",
            request.get("model"),
            body.get("stop_reason"),
            usage.get("input_tokens"),
            usage.get("output_tokens"),
        )
        return body

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AnthropicClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
