"""HTTP client for the completion endpoint.

Speaks two protocols over newline-delimited server-sent events:

- single request: ``data: {"choices": [{"text": ...}]}`` or ``data: {"content": ...}``
- batch: ``data: {"id": ..., "type": "token"|"done"|"error", "text": ...}``

``data: [DONE]`` ends a stream. Lines that are blank, comments or not valid
JSON are skipped so one bad line never poisons the other ids of a batch.
"""

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from loomtree.core.errors import CompletionServiceError
from loomtree.core.logging import get_logger
from loomtree.core.schemas_completion import (
    BatchStreamRequest,
    LoomSettings,
    StreamEvent,
    StreamEventType,
)

logger = get_logger(__name__)

DONE_SENTINEL = "[DONE]"


class BatchTransport(Protocol):
    """Anything that turns a batch of prompts into one stream of tagged events."""

    def stream_batch(
        self, requests: Sequence[BatchStreamRequest], settings: LoomSettings
    ) -> AsyncIterator[StreamEvent]: ...


class StreamCallbacks(Protocol):
    def on_token(self, request_id: str, text: str) -> None: ...

    def on_done(self, request_id: str) -> None: ...

    def on_error(self, request_id: str, message: str) -> None: ...


# ============================================================================
# Line parsing
# ============================================================================


def parse_sse_data(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for anything else."""
    trimmed = line.strip()
    if not trimmed or trimmed.startswith(":") or not trimmed.startswith("data:"):
        return None
    return trimmed[len("data:"):].strip()


def extract_completion_text(payload: Any) -> str | None:
    """Pull the text fragment out of either accepted single-request shape."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict) and isinstance(first.get("text"), str):
            return first["text"]
    # llama.cpp native format: { content: "..." }
    if isinstance(payload.get("content"), str):
        return payload["content"]
    return None


def parse_batch_event(data: str) -> StreamEvent | None:
    """Decode one batch payload; malformed payloads yield None."""
    try:
        event = StreamEvent.model_validate(json.loads(data))
    except (ValueError, ValidationError):
        logger.debug(f"Skipping malformed batch line: {data[:80]!r}")
        return None
    if event.type == StreamEventType.TOKEN and event.text is None:
        return None
    if event.type == StreamEventType.ERROR and not event.text:
        return StreamEvent.error(event.id, "Unknown error")
    return event


def completions_url(api_base_url: str) -> str:
    return f"{api_base_url.rstrip('/')}/completions"


def _headers(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _error_message(response: httpx.Response) -> str:
    message = f"API error: {response.status_code}"
    try:
        err = response.json()
    except ValueError:
        return message
    if isinstance(err, dict) and isinstance(err.get("error"), dict):
        return err["error"].get("message") or message
    return message


async def dispatch_events(events: AsyncIterator[StreamEvent], callbacks: StreamCallbacks) -> None:
    """Route each event to the matching callback."""
    async for event in events:
        if event.type == StreamEventType.TOKEN:
            callbacks.on_token(event.id, event.text or "")
        elif event.type == StreamEventType.DONE:
            callbacks.on_done(event.id)
        else:
            callbacks.on_error(event.id, event.text or "Unknown error")


# ============================================================================
# Client
# ============================================================================


class CompletionClient:
    """Completion endpoint client.

    Args:
        batch_endpoint: URL of a multiplexed batch endpoint (needed for ``stream_batch``)
        http_client: shared ``httpx.AsyncClient``; when omitted one is opened per call
        timeout: per-request timeout in seconds for self-managed clients
    """

    def __init__(
        self,
        batch_endpoint: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ):
        self.batch_endpoint = batch_endpoint
        self._http_client = http_client
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    async def fetch_completion(self, prompt: str, settings: LoomSettings) -> str:
        """
        Request a single non-streamed completion.

        Raises:
            CompletionServiceError: on non-2xx status, unreadable body or no text
        """
        body = {**settings.completion_body(), "prompt": prompt}
        try:
            async with self._client() as client:
                response = await client.post(
                    completions_url(settings.api_base_url),
                    headers=_headers(settings.api_key),
                    json=body,
                )
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"Request failed: {e}") from e

        if not response.is_success:
            raise CompletionServiceError(_error_message(response), response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise CompletionServiceError("Invalid JSON in response", response.status_code) from e

        text = extract_completion_text(data)
        if text is None:
            raise CompletionServiceError("No completion text in response", response.status_code)
        return text

    async def stream_completion(self, prompt: str, settings: LoomSettings) -> AsyncIterator[str]:
        """
        Stream one completion, yielding text fragments as they arrive.

        Raises:
            CompletionServiceError: if the request fails or the connection drops
        """
        body = {**settings.completion_body(), "prompt": prompt, "stream": True}
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    completions_url(settings.api_base_url),
                    headers=_headers(settings.api_key),
                    json=body,
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise CompletionServiceError(
                            _error_message(response), response.status_code
                        )
                    async for line in response.aiter_lines():
                        data = parse_sse_data(line)
                        if data is None:
                            continue
                        if data == DONE_SENTINEL:
                            return
                        try:
                            text = extract_completion_text(json.loads(data))
                        except ValueError:
                            continue
                        if text is not None:
                            yield text
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"Stream failed: {e}") from e

    async def stream_batch(
        self, requests: Sequence[BatchStreamRequest], settings: LoomSettings
    ) -> AsyncIterator[StreamEvent]:
        """
        Open one stream for the whole batch and yield its demultiplexed events.

        Raises:
            CompletionServiceError: once, for a connection-level failure; the
                caller attributes it to every id not yet finished
        """
        if not requests:
            return
        if not self.batch_endpoint:
            raise CompletionServiceError("No batch endpoint configured")

        body = {
            "requests": [r.model_dump() for r in requests],
            "apiBaseUrl": settings.api_base_url,
            "apiKey": settings.api_key,
            "maxParallel": settings.max_parallel_requests,
            **settings.completion_body(),
        }
        logger.debug(f"Opening batch stream for {len(requests)} requests")
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.batch_endpoint, headers=_headers(""), json=body
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise CompletionServiceError(
                            _error_message(response), response.status_code
                        )
                    async for line in response.aiter_lines():
                        data = parse_sse_data(line)
                        if data is None:
                            continue
                        if data == DONE_SENTINEL:
                            return
                        event = parse_batch_event(data)
                        if event is not None:
                            yield event
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"Batch stream failed: {e}") from e

    async def fetch_completion_stream_batch(
        self,
        requests: Sequence[BatchStreamRequest],
        settings: LoomSettings,
        callbacks: StreamCallbacks,
    ) -> None:
        """Callback-style wrapper around ``stream_batch``."""
        await dispatch_events(self.stream_batch(requests, settings), callbacks)
