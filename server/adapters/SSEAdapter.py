"""Server-Sent Events transport for query events."""

import asyncio
import json
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable

from services.answer.AnswerService import AnswerService
from shared.helper.cancel_helper import CancelToken
from shared.helper.HelperConfig import HelperConfig
from shared.models.events import QueryEvent, event_payload
from shared.models.search import SearchRequest

SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    # keep reverse proxies from buffering the stream
    "X-Accel-Buffering": "no",
}
SSE_OPEN_FRAME = ":\n\n"
SSE_PING_FRAME = ": ping\n\n"

_END_OF_STREAM = object()


def format_sse_event(event: QueryEvent) -> str:
    """Render one event as an SSE data frame."""
    return f"data: {json.dumps(event_payload(event), ensure_ascii=False)}\n\n"


class SSEAdapter:
    """Turns the event stream of one query into SSE frames.

    The query runs in its own producer task. While it is silent, a comment
    frame is written every SSE_KEEPALIVE_SECONDS so intermediaries keep the
    connection open. When the client goes away the producer task and the
    query's cancel token are cancelled.
    """

    def __init__(self, helper_config: HelperConfig, answer_service: AnswerService) -> None:
        self.logging = helper_config.get_logger()
        self._answer_service = answer_service
        self.keepalive_seconds = float(helper_config.get_number_val("SSE_KEEPALIVE_SECONDS", default=15))

    async def _produce(self, request: SearchRequest, owner_id: str, token: CancelToken, queue: asyncio.Queue) -> None:
        try:
            async with aclosing(self._answer_service.run_query(request, owner_id, token)) as events:
                async for event in events:
                    queue.put_nowait(event)
        finally:
            queue.put_nowait(_END_OF_STREAM)

    async def stream(
        self,
        request: SearchRequest,
        owner_id: str,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        """Yield the SSE frames of one query.

        Args:
            request (SearchRequest): The validated query.
            owner_id (str): The requesting user.
            is_disconnected (Callable | None): Polled on keep-alive ticks to notice a gone client.

        Yields:
            str: The opening comment, one data frame per event and keep-alive comments.
        """
        token = CancelToken()
        queue: asyncio.Queue = asyncio.Queue()
        yield SSE_OPEN_FRAME

        producer = asyncio.create_task(self._produce(request, owner_id, token, queue))
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        self.logging.debug("SSE client of owner %s disconnected.", owner_id)
                        break
                    yield SSE_PING_FRAME
                    continue
                if item is _END_OF_STREAM:
                    break
                yield format_sse_event(item)
        finally:
            token.cancel(reason="client disconnected")
            if not producer.done():
                producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
