"""In-process batch front door.

Fans a batch out into one streamed completion per request, at most
``max_parallel_requests`` in flight at a time, and merges their fragments into
a single stream of id-tagged events: the same shape a remote batch endpoint
produces, so the orchestrator does not care which one it talks to.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Sequence

from loomtree.core.errors import CompletionServiceError
from loomtree.core.logging import get_logger
from loomtree.core.schemas_completion import BatchStreamRequest, LoomSettings, StreamEvent
from loomtree.services.completion_client import CompletionClient

logger = get_logger(__name__)


class CompletionMultiplexer:
    """Runs a batch against the single-request streaming protocol."""

    def __init__(self, client: CompletionClient):
        self._client = client
        self.in_flight = 0
        self.peak_in_flight = 0

    async def stream_batch(
        self, requests: Sequence[BatchStreamRequest], settings: LoomSettings
    ) -> AsyncIterator[StreamEvent]:
        if not requests:
            return

        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        semaphore = asyncio.Semaphore(settings.max_parallel_requests)

        async def process(request: BatchStreamRequest) -> None:
            async with semaphore:
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    async for text in self._client.stream_completion(request.prompt, settings):
                        queue.put_nowait(StreamEvent.token(request.id, text))
                except CompletionServiceError as e:
                    queue.put_nowait(StreamEvent.error(request.id, e.message))
                    return
                except Exception as e:
                    # One failing request must not take its siblings down
                    logger.warning(f"Completion {request.id} failed: {e}")
                    queue.put_nowait(StreamEvent.error(request.id, str(e) or type(e).__name__))
                    return
                finally:
                    self.in_flight -= 1
            queue.put_nowait(StreamEvent.done(request.id))

        async def run_all() -> None:
            try:
                await asyncio.gather(*(process(r) for r in requests))
            finally:
                queue.put_nowait(None)

        runner = asyncio.create_task(run_all())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if not runner.done():
                runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
