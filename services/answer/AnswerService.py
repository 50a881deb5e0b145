"""Answer orchestration: gate → record usage → retrieve → stream the generated answer.

run_query() yields transport-agnostic QueryEvents. The SSE and WebSocket
adapters only serialize them; all ordering guarantees live here:
matches before chunks, chunks in arrival order, exactly one terminal event
(done or error), and nothing at all once the query was cancelled.
"""

from contextlib import aclosing
from typing import AsyncIterator

from services.retrieval.RetrievalService import REASON_NO_DOCUMENTS, RetrievalService
from services.usage_gate.UsageGate import UsageGate
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.helper.cancel_helper import CancelToken, is_abort_error
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import QuotaExceededError
from shared.models.events import ChunkEvent, DoneEvent, ErrorEvent, InfoEvent, MatchesEvent, QueryEvent
from shared.models.search import AnswerResponse, MatchItem, RetrievalCandidate, SearchRequest

SYSTEM_PROMPT = (
    "You are a retrieval assistant. Use only the provided document context to answer briefly. "
    "If context is irrelevant or insufficient, say so."
)
EMPTY_ANSWER = "No response returned. Try again."
GENERIC_FAILURE = "Search failed"


def dedupe_matches(matches: list[MatchItem]) -> list[MatchItem]:
    """Keep the best-scored entry per document id, sorted by score descending.

    Entries without an id are dropped.

    Args:
        matches (list[MatchItem]): Possibly repeated matches.

    Returns:
        list[MatchItem]: One match per document.
    """
    best: dict[str, MatchItem] = {}
    for item in matches:
        key = str(item.id or "").strip()
        if not key:
            continue
        previous = best.get(key)
        if previous is None or item.score > previous.score:
            best[key] = item
    return sorted(best.values(), key=lambda item: item.score, reverse=True)


def build_messages(context_text: str, query: str) -> list[dict]:
    """Chat messages for the answer generation."""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": f"Context:\n{context_text}\n\nQuestion: {query}"},
    ]


def quota_error_event(error: QuotaExceededError) -> ErrorEvent:
    return ErrorEvent(message=error.describe(), **error.to_payload())


class AnswerService:
    """Runs natural-language queries against an owner's documents."""

    def __init__(
        self,
        helper_config: HelperConfig,
        usage_gate: UsageGate,
        retrieval_service: RetrievalService,
        llm_client: LLMClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._usage_gate = usage_gate
        self._retrieval = retrieval_service
        self._llm_client = llm_client

    @staticmethod
    def build_matches(ranked: list[RetrievalCandidate]) -> list[MatchItem]:
        matches = [
            MatchItem(**candidate.document.to_public().model_dump(), score=candidate.hybrid_score)
            for candidate in ranked
        ]
        return dedupe_matches(matches)

    ##########################################
    ############### STREAMING ################
    ##########################################

    async def run_query(
        self,
        request: SearchRequest,
        owner_id: str,
        cancel_token: CancelToken | None = None,
    ) -> AsyncIterator[QueryEvent]:
        """Answer a query as a stream of events.

        Args:
            request (SearchRequest): The validated query.
            owner_id (str): The requesting user; documents and quota are scoped to it.
            cancel_token (CancelToken | None): Stops the query; once fired nothing more is yielded.

        Yields:
            QueryEvent: error (quota) | info + done (no results) |
                matches, chunk*, done | error (failure).
        """
        token = cancel_token or CancelToken()
        try:
            try:
                await self._usage_gate.admit_message(owner_id)
            except QuotaExceededError as e:
                yield quota_error_event(e)
                return

            result = await self._retrieval.do_retrieve(
                query=request.query,
                top_k=request.top_k,
                owner_id=owner_id,
                category=request.category,
                document_id=request.document_id,
                cancel_token=token,
            )
            if token.cancelled:
                return
            if not result.ranked:
                yield InfoEvent(message=result.reason or REASON_NO_DOCUMENTS)
                yield DoneEvent()
                return

            yield MatchesEvent(matches=self.build_matches(result.ranked))

            messages = build_messages(result.context_text, request.query)
            stream = self._llm_client.do_chat_stream(messages, model=request.model, cancel_token=token)
            async with aclosing(stream) as deltas:
                async for delta in deltas:
                    if token.cancelled:
                        return
                    yield ChunkEvent(text=delta)
            if token.cancelled:
                return
            yield DoneEvent()
        except Exception as e:
            if is_abort_error(e, token):
                self.logging.debug("Query for owner %s aborted: %s", owner_id, e)
                return
            self.logging.error("Search stream failed for owner %s: %s", owner_id, e)
            yield ErrorEvent(message=str(e) or GENERIC_FAILURE)

    ##########################################
    ############# NON-STREAMING ##############
    ##########################################

    async def do_answer(self, request: SearchRequest, owner_id: str) -> AnswerResponse:
        """Answer a query in one piece.

        Raises:
            QuotaExceededError: If the user's daily message limit is reached.
            LLMRequestError: If embedding or generation fails.
            RepositoryError: If the repository is unavailable.
        """
        await self._usage_gate.admit_message(owner_id)

        result = await self._retrieval.do_retrieve(
            query=request.query,
            top_k=request.top_k,
            owner_id=owner_id,
            category=request.category,
            document_id=request.document_id,
        )
        if not result.ranked:
            return AnswerResponse(answer=result.reason or REASON_NO_DOCUMENTS, matches=[])

        answer = await self._llm_client.do_chat(build_messages(result.context_text, request.query), model=request.model)
        return AnswerResponse(answer=answer or EMPTY_ANSWER, matches=self.build_matches(result.ranked))
