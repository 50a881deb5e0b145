"""In-memory stand-ins for the external AI service and the clock."""

import asyncio
from datetime import datetime, timedelta

import pytz

from shared.helper.cancel_helper import CancelToken
from shared.models.document import Document


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 14, 22, 30, tzinfo=pytz.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeLLMClient:
    """Mimics LLMClientInterface without any HTTP.

    Embeddings are looked up by exact text, falling back to default_embedding.
    Every streamed chat yields `chunks`; with hold_first_stream the first
    stream blocks after its first chunk until it is cancelled.
    """

    def __init__(
        self,
        default_embedding: list[float] | None = None,
        chunks: list[str] | None = None,
        reply: str = "Generated answer.",
    ):
        self.embeddings: dict[str, list[float]] = {}
        self.default_embedding = default_embedding or [1.0, 0.0]
        self.chunks = list(chunks) if chunks is not None else ["Hello", " world"]
        self.reply = reply
        self.stream_error: Exception | None = None
        self.embed_error: Exception | None = None
        self.embed_delay = 0.0
        self.hold_first_stream = False
        self.holding = asyncio.Event()

        self.embed_calls: list[str] = []
        self.chat_calls: list[dict] = []
        self.stream_calls: list[dict] = []
        self.closed_streams = 0

    def get_engine_name(self) -> str:
        return "fake"

    async def boot(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def do_healthcheck(self) -> bool:
        return True

    async def do_embed_text(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if self.embed_delay:
            await asyncio.sleep(self.embed_delay)
        if self.embed_error is not None:
            raise self.embed_error
        return list(self.embeddings.get(text, self.default_embedding))

    async def do_chat(self, messages: list[dict], model: str | None = None, json_output: bool = False) -> str:
        self.chat_calls.append({"messages": messages, "model": model, "json_output": json_output})
        return self.reply

    async def do_chat_stream(self, messages: list[dict], model: str | None = None, cancel_token: CancelToken | None = None):
        call_index = len(self.stream_calls)
        self.stream_calls.append({"messages": messages, "model": model})
        try:
            for position, chunk in enumerate(self.chunks):
                if cancel_token is not None and cancel_token.cancelled:
                    return
                yield chunk
                if position == 0 and call_index == 0 and self.hold_first_stream:
                    self.holding.set()
                    await asyncio.Event().wait()
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.closed_streams += 1


def make_document(
    owner_id: str = "user_1",
    categories: list[str] | None = None,
    embedding: list[float] | None = None,
    caption: str = "A screenshot",
    text: str = "",
    doc_id: str | None = None,
    created_at: int = 1_700_000_000_000,
) -> Document:
    values = dict(
        owner_id=owner_id,
        caption=caption,
        text=text,
        categories=categories if categories is not None else ["receipts"],
        embedding=embedding if embedding is not None else [1.0, 0.0],
        created_at=created_at,
    )
    if doc_id:
        values["id"] = doc_id
    return Document(**values)
