"""Tests for SSE framing, keep-alive comments and cancellation on disconnect."""

import asyncio

import pytest

from server.adapters.SSEAdapter import SSE_OPEN_FRAME, SSE_PING_FRAME, SSEAdapter, format_sse_event
from services.answer.AnswerService import AnswerService
from services.retrieval.RetrievalService import RetrievalService
from shared.models.events import ChunkEvent, ErrorEvent
from shared.models.search import SearchRequest
from fakes.fake_clients import make_document

OWNER = "user_1"


@pytest.fixture
def sse_adapter(monkeypatch, helper_config, usage_gate, repo, fake_llm) -> SSEAdapter:
    monkeypatch.setenv("SSE_KEEPALIVE_SECONDS", "0.05")
    retrieval = RetrievalService(helper_config=helper_config, repo_client=repo, llm_client=fake_llm)
    answer_service = AnswerService(
        helper_config=helper_config,
        usage_gate=usage_gate,
        retrieval_service=retrieval,
        llm_client=fake_llm,
    )
    return SSEAdapter(helper_config=helper_config, answer_service=answer_service)


def test_format_sse_event_keeps_unicode():
    assert format_sse_event(ChunkEvent(text="Grüße")) == 'data: {"type": "chunk", "text": "Grüße"}\n\n'
    assert format_sse_event(ErrorEvent(message="boom")) == 'data: {"type": "error", "message": "boom"}\n\n'


@pytest.mark.asyncio
async def test_pings_while_silent_and_cancels_on_close(sse_adapter, repo, fake_llm):
    await repo.do_save_document(make_document())
    fake_llm.hold_first_stream = True
    frames = []

    stream = sse_adapter.stream(SearchRequest(query="lunch"), OWNER)
    async for frame in stream:
        frames.append(frame)
        if frame == SSE_PING_FRAME:
            break
    await stream.aclose()

    assert frames[0] == SSE_OPEN_FRAME
    assert frames[1].startswith('data: {"type": "matches"')
    assert frames[2] == 'data: {"type": "chunk", "text": "Hello"}\n\n'
    assert frames[-1] == SSE_PING_FRAME
    assert fake_llm.closed_streams == 1


@pytest.mark.asyncio
async def test_disconnected_client_ends_the_stream(sse_adapter, repo, fake_llm):
    await repo.do_save_document(make_document())
    fake_llm.hold_first_stream = True

    async def is_disconnected() -> bool:
        return True

    frames = [f async for f in sse_adapter.stream(SearchRequest(query="lunch"), OWNER, is_disconnected)]

    assert SSE_PING_FRAME not in frames
    assert not any('"done"' in f for f in frames)
    await asyncio.sleep(0)
    assert fake_llm.closed_streams == 1
