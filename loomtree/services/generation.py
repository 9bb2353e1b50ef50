"""Generation orchestrator: turns "continue this node" into streamed child nodes.

Each request id moves through PENDING -> STREAMING -> DONE | ERROR. Terminal
states are final; late or duplicate events for a finished id are ignored.

Tokens accumulate in a per-id buffer seeded with the prompt. The store is
written at most once per flush interval per node, not once per token. On
failure a node that never received a token is restored to exactly its prompt;
a node with partial text keeps it and gets a visible error marker appended.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from uuid import uuid4

from loomtree.core.config import DEFAULT_API_BASE_URL
from loomtree.core.errors import CompletionServiceError, GenerationPreconditionError
from loomtree.core.graph_store import GraphStore
from loomtree.core.logging import get_logger, log_with_context
from loomtree.core.schemas_completion import (
    BatchStreamRequest,
    LoomSettings,
    StreamEvent,
    StreamEventType,
)
from loomtree.core.settings_store import SettingsStore
from loomtree.core.tree import find_leaves
from loomtree.services.completion_client import BatchTransport

logger = get_logger(__name__)

STREAM_ENDED_MESSAGE = "Stream ended without response"
CANCELLED_MESSAGE = "Generation cancelled"
ERROR_MARKER_MAX_CHARS = 120


class RequestState(str, Enum):
    """Lifecycle of one streamed child."""
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"


@dataclass
class BatchEntry:
    """``count`` completions of ``prompt`` to hang under ``parent_id``."""

    parent_id: str
    prompt: str
    count: int


@dataclass
class _InFlight:
    node_id: str
    prompt: str
    buffer: str
    state: RequestState = RequestState.PENDING
    flush_handle: asyncio.TimerHandle | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (RequestState.DONE, RequestState.ERROR)

    def cancel_flush(self) -> None:
        if self.flush_handle is not None:
            self.flush_handle.cancel()
            self.flush_handle = None


def format_error_marker(message: str) -> str:
    if len(message) > ERROR_MARKER_MAX_CHARS:
        message = message[: ERROR_MARKER_MAX_CHARS - 3] + "..."
    return f"\n\n[Error: {message}]"


class GenerationOrchestrator:
    """Drives batches of streamed completions into the document store."""

    def __init__(
        self,
        store: GraphStore,
        transport: BatchTransport,
        settings: SettingsStore,
        *,
        flush_interval: float = 1 / 60,
        rng: random.Random | None = None,
    ):
        self._store = store
        self._transport = transport
        self._settings = settings
        self._flush_interval = flush_interval
        self._rng = rng or random.Random()
        self._active_requests = 0
        self._is_bulk_generating = False

    @property
    def active_requests(self) -> int:
        return self._active_requests

    @property
    def is_bulk_generating(self) -> bool:
        return self._is_bulk_generating

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate_for_node(self, node_id: str, count: int | None = None) -> list[str]:
        """
        Stream ``count`` sibling continuations of a node's text.

        Args:
            node_id: Source node
            count: Number of children (defaults to the ``numGenerations`` setting)

        Returns:
            Ids of the children created

        Raises:
            GenerationPreconditionError: no credential, a negative count, or the node has no text
        """
        settings = self._settings.current
        _check_credentials(settings)

        if count is None:
            count = settings.num_generations
        if count < 0:
            raise GenerationPreconditionError("Generation count cannot be negative")

        prompt = self._store.get_prompt(node_id)
        if not prompt.strip():
            raise GenerationPreconditionError("Node has no text to generate from")

        self._store.patch_generating(node_id, True)
        self._store.patch_error(node_id, None)
        try:
            return await self.run_batch([BatchEntry(node_id, prompt, count)], settings)
        finally:
            self._store.patch_generating(node_id, False)

    async def generate_all_leaves(self) -> int:
        """
        Continue every leaf at once, sampling uniformly when there are too many.

        Returns:
            Number of leaves generated from

        Raises:
            GenerationPreconditionError: no credential configured
        """
        settings = self._settings.current
        _check_credentials(settings)

        leaves = [n for n in find_leaves(self._store.nodes) if not n.data.is_generating]
        if not leaves:
            return 0

        if len(leaves) > settings.max_leaf_generations:
            # random.shuffle is a Fisher-Yates shuffle
            self._rng.shuffle(leaves)
            leaves = leaves[: settings.max_leaf_generations]

        self._is_bulk_generating = True
        try:
            for leaf in leaves:
                self._store.patch_generating(leaf.id, True)
                self._store.patch_error(leaf.id, None)

            entries = [
                BatchEntry(leaf.id, self._store.get_prompt(leaf.id), settings.num_generations)
                for leaf in leaves
            ]
            await self.run_batch(entries, settings)
        finally:
            for leaf in leaves:
                self._store.patch_generating(leaf.id, False)
            self._is_bulk_generating = False

        return len(leaves)

    async def run_batch(self, entries: list[BatchEntry], settings: LoomSettings) -> list[str]:
        """
        Materialize placeholders for every entry and stream them in one transport call.

        Never raises for per-node failures; those are recorded on the nodes.
        """
        requests: list[BatchStreamRequest] = []
        in_flight: dict[str, _InFlight] = {}

        for entry in entries:
            for _ in range(entry.count):
                child_id = self._store.add_streaming_child(
                    entry.parent_id, entry.prompt, len(entry.prompt)
                )
                if child_id:
                    requests.append(BatchStreamRequest(id=child_id, prompt=entry.prompt))
                    in_flight[child_id] = _InFlight(child_id, entry.prompt, entry.prompt)

        if not requests:
            return []

        batch_id = uuid4().hex[:8]
        self._active_requests += len(requests)
        log_with_context(
            logger, logging.INFO, "Starting generation batch",
            batch_id=batch_id, requests=len(requests), sources=len(entries),
        )

        loop = asyncio.get_running_loop()
        failure = STREAM_ENDED_MESSAGE
        try:
            async for event in self._transport.stream_batch(requests, settings):
                self._dispatch(event, in_flight, loop)
        except asyncio.CancelledError:
            failure = CANCELLED_MESSAGE
            raise
        except CompletionServiceError as e:
            failure = e.message
            logger.warning(f"Batch {batch_id} transport failed: {e.message}")
        except Exception as e:
            failure = str(e) or type(e).__name__
            logger.warning(f"Batch {batch_id} failed: {failure}")
        finally:
            orphans = [r for r in in_flight.values() if not r.terminal]
            for request in orphans:
                self._mark_error(request, failure)
            if orphans:
                self._store.persist()

        errors = sum(1 for r in in_flight.values() if r.state == RequestState.ERROR)
        log_with_context(
            logger, logging.INFO, "Finished generation batch",
            batch_id=batch_id, requests=len(requests), errors=errors,
        )
        return [r.id for r in requests]

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        event: StreamEvent,
        in_flight: dict[str, _InFlight],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        request = in_flight.get(event.id)
        if request is None or request.terminal:
            return

        if event.type == StreamEventType.TOKEN:
            request.state = RequestState.STREAMING
            request.buffer += event.text or ""
            if request.flush_handle is None:
                request.flush_handle = loop.call_later(
                    self._flush_interval, self._flush, request
                )
        elif event.type == StreamEventType.DONE:
            self._mark_done(request)
            self._store.persist()
        else:
            self._mark_error(request, event.text or "Unknown error")
            self._store.persist()

    def _flush(self, request: _InFlight) -> None:
        request.flush_handle = None
        if not request.terminal:
            self._store.patch_text(request.node_id, request.buffer)

    def _mark_done(self, request: _InFlight) -> None:
        if request.terminal:
            return
        request.state = RequestState.DONE
        request.cancel_flush()
        self._store.patch_text(request.node_id, request.buffer)
        self._store.patch_generating(request.node_id, False)
        self._active_requests -= 1

    def _mark_error(self, request: _InFlight, message: str) -> None:
        if request.terminal:
            return
        request.state = RequestState.ERROR
        request.cancel_flush()
        if len(request.buffer) <= len(request.prompt):
            # Nothing streamed: undo the placeholder back to the bare prompt
            text = request.prompt
        else:
            text = request.buffer + format_error_marker(message)
        self._store.patch_text(request.node_id, text)
        self._store.patch_error(request.node_id, message)
        self._store.patch_generating(request.node_id, False)
        self._active_requests -= 1
        logger.warning(f"Generation for {request.node_id} failed: {message}")


def _check_credentials(settings: LoomSettings) -> None:
    if not settings.api_key and settings.api_base_url.rstrip("/") == DEFAULT_API_BASE_URL:
        raise GenerationPreconditionError("API key is required")
