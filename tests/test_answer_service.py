"""Tests for the streaming answer orchestrator and the per-connection query session."""

import asyncio

import pytest

from services.answer.AnswerService import AnswerService, EMPTY_ANSWER, build_messages, dedupe_matches
from services.answer.QuerySession import QuerySession
from services.retrieval.RetrievalService import REASON_NO_DOCUMENTS, RetrievalService
from shared.helper.cancel_helper import CancelToken
from shared.models.errors import LLMRequestError, QuotaExceededError
from shared.models.events import ChunkEvent, DoneEvent, ErrorEvent, InfoEvent, MatchesEvent
from shared.models.search import MatchItem, SearchRequest
from fakes.fake_clients import make_document

OWNER = "user_1"


@pytest.fixture
def answer_service(helper_config, usage_gate, repo, fake_llm) -> AnswerService:
    retrieval = RetrievalService(helper_config=helper_config, repo_client=repo, llm_client=fake_llm)
    return AnswerService(
        helper_config=helper_config,
        usage_gate=usage_gate,
        retrieval_service=retrieval,
        llm_client=fake_llm,
    )


async def _collect(answer_service: AnswerService, query: str = "what did I buy", token: CancelToken | None = None):
    request = SearchRequest(query=query)
    return [event async for event in answer_service.run_query(request, OWNER, token)]


def _match(doc_id: str, score: float) -> MatchItem:
    return MatchItem(
        id=doc_id, owner_id=OWNER, caption="", text="", categories=["receipts"], created_at=0, score=score
    )


def test_dedupe_matches_keeps_best_score_per_document():
    result = dedupe_matches([_match("a", 0.40), _match("b", 0.30), _match("a", 0.55), _match("", 0.99)])
    assert [(m.id, m.score) for m in result] == [("a", 0.55), ("b", 0.30)]


def test_build_messages_puts_context_before_question():
    messages = build_messages("score:0.500 ...", "where is it")
    assert messages[0]["role"] == "system"
    assert messages[1]["content"] == "Context:\nscore:0.500 ...\n\nQuestion: where is it"


class TestRunQuery:
    @pytest.mark.asyncio
    async def test_matches_then_chunks_then_done(self, answer_service, repo):
        document = await repo.do_save_document(make_document(caption="Lunch receipt"))

        events = await _collect(answer_service)

        assert [type(e) for e in events] == [MatchesEvent, ChunkEvent, ChunkEvent, DoneEvent]
        assert [m.id for m in events[0].matches] == [document.id]
        assert "".join(e.text for e in events[1:3]) == "Hello world"

    @pytest.mark.asyncio
    async def test_no_documents_gives_info_and_done(self, answer_service, fake_llm):
        events = await _collect(answer_service)

        assert events == [InfoEvent(message=REASON_NO_DOCUMENTS), DoneEvent()]
        assert fake_llm.stream_calls == []

    @pytest.mark.asyncio
    async def test_usage_is_recorded_before_retrieval(self, answer_service, usage_gate):
        await _collect(answer_service)
        summary = await usage_gate.get_summary(OWNER)
        assert summary.messages.used == 1

    @pytest.mark.asyncio
    async def test_quota_denial_is_a_single_error_and_records_nothing(self, answer_service, usage_gate, fake_llm):
        for _ in range(5):
            await usage_gate.record_message_used(OWNER)

        events = await _collect(answer_service)

        assert len(events) == 1
        error = events[0]
        assert isinstance(error, ErrorEvent)
        assert error.code == "PAYWALL_REQUIRED"
        assert (error.scope, error.used, error.limit, error.plan) == ("messages", 5, 5, "free")
        assert fake_llm.embed_calls == []
        assert (await usage_gate.get_summary(OWNER)).messages.used == 5

    @pytest.mark.asyncio
    async def test_generation_failure_ends_with_error(self, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.stream_error = LLMRequestError("upstream returned 500")

        events = await _collect(answer_service)

        assert isinstance(events[0], MatchesEvent)
        assert events[-1] == ErrorEvent(message="upstream returned 500")
        assert not any(isinstance(e, DoneEvent) for e in events)

    @pytest.mark.asyncio
    async def test_embedding_failure_ends_with_error(self, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.embed_error = LLMRequestError("embedding failed")

        events = await _collect(answer_service)

        assert events == [ErrorEvent(message="embedding failed")]

    @pytest.mark.asyncio
    async def test_abort_errors_end_silently(self, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.stream_error = RuntimeError("The operation was aborted")

        events = await _collect(answer_service)

        assert not any(isinstance(e, (ErrorEvent, DoneEvent)) for e in events)

    @pytest.mark.asyncio
    async def test_cancelled_token_yields_nothing_after_cancellation(self, answer_service, repo):
        await repo.do_save_document(make_document())
        token = CancelToken()
        events = []

        async for event in answer_service.run_query(SearchRequest(query="lunch"), OWNER, token):
            events.append(event)
            if isinstance(event, ChunkEvent):
                token.cancel()

        assert [type(e) for e in events] == [MatchesEvent, ChunkEvent]


class TestDoAnswer:
    @pytest.mark.asyncio
    async def test_returns_answer_and_matches(self, answer_service, repo, fake_llm):
        document = await repo.do_save_document(make_document())

        response = await answer_service.do_answer(SearchRequest(query="lunch", model="gpt-4o"), OWNER)

        assert response.answer == "Generated answer."
        assert [m.id for m in response.matches] == [document.id]
        assert fake_llm.chat_calls[0]["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_empty_reply_falls_back(self, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.reply = ""

        response = await answer_service.do_answer(SearchRequest(query="lunch"), OWNER)

        assert response.answer == EMPTY_ANSWER

    @pytest.mark.asyncio
    async def test_no_documents_returns_reason(self, answer_service):
        response = await answer_service.do_answer(SearchRequest(query="lunch"), OWNER)
        assert response.answer == REASON_NO_DOCUMENTS
        assert response.matches == []

    @pytest.mark.asyncio
    async def test_quota_denial_raises(self, answer_service, usage_gate):
        for _ in range(5):
            await usage_gate.record_message_used(OWNER)
        with pytest.raises(QuotaExceededError):
            await answer_service.do_answer(SearchRequest(query="lunch"), OWNER)


class TestQuerySession:
    @pytest.mark.asyncio
    async def test_second_query_cancels_the_first(self, helper_config, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.hold_first_stream = True
        session = QuerySession(helper_config=helper_config, answer_service=answer_service)
        first_events, second_events = [], []

        async def emit_first(event):
            first_events.append(event)

        async def emit_second(event):
            second_events.append(event)

        first_task = await session.start(SearchRequest(query="first"), OWNER, emit_first)
        await asyncio.wait_for(fake_llm.holding.wait(), timeout=2)
        second_task = await session.start(SearchRequest(query="second"), OWNER, emit_second)
        await asyncio.wait_for(session.wait(), timeout=2)

        assert first_task.done()
        assert second_task.done()
        assert [type(e) for e in first_events] == [MatchesEvent, ChunkEvent]
        assert [type(e) for e in second_events] == [MatchesEvent, ChunkEvent, ChunkEvent, DoneEvent]
        # the held upstream stream was closed, not leaked
        assert fake_llm.closed_streams == 2

    @pytest.mark.asyncio
    async def test_close_cancels_active_query(self, helper_config, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        fake_llm.hold_first_stream = True
        session = QuerySession(helper_config=helper_config, answer_service=answer_service)
        events = []

        async def emit(event):
            events.append(event)

        await session.start(SearchRequest(query="first"), OWNER, emit)
        await asyncio.wait_for(fake_llm.holding.wait(), timeout=2)
        await session.close()

        assert not session.active
        assert not any(isinstance(e, DoneEvent) for e in events)

    @pytest.mark.asyncio
    async def test_delivery_failure_stops_the_query(self, helper_config, answer_service, repo, fake_llm):
        await repo.do_save_document(make_document())
        session = QuerySession(helper_config=helper_config, answer_service=answer_service)

        async def emit(event):
            raise ConnectionError("socket closed")

        task = await session.start(SearchRequest(query="first"), OWNER, emit)
        await asyncio.wait_for(task, timeout=2)

        assert len(fake_llm.stream_calls) == 0
