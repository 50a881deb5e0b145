"""Tests for hybrid scoring, threshold filtering and retrieval end to end."""

import math

import pytest

from services.retrieval.RetrievalService import (
    REASON_DOCUMENT_NOT_FOUND,
    REASON_DOCUMENT_NOT_INDEXED,
    REASON_INVALID_CATEGORY,
    REASON_NO_DOCUMENTS,
    REASON_NO_RELEVANT,
    RetrievalService,
    cosine_similarity,
    lexical_overlap,
    tokenize,
    truncate,
)
from shared.helper.cancel_helper import CancelToken, QueryCancelledError
from shared.models.search import RetrievalCandidate
from fakes.fake_clients import make_document

OWNER = "user_1"
# cosine 0.6 against [1, 0]
QUERY_EMBEDDING = [0.6, 0.8]


@pytest.fixture
def retrieval(helper_config, repo, fake_llm) -> RetrievalService:
    fake_llm.default_embedding = QUERY_EMBEDDING
    return RetrievalService(helper_config=helper_config, repo_client=repo, llm_client=fake_llm)


def _candidate(cosine: float, overlap: float, weight: float = 0.08) -> RetrievalCandidate:
    return RetrievalCandidate(
        document=make_document(),
        cosine_score=cosine,
        lexical_overlap=overlap,
        hybrid_score=cosine + weight * overlap,
    )


class TestScoringHelpers:
    def test_tokenize_lowercases_dedupes_and_drops_short_tokens(self):
        assert tokenize("The CAT sat on the mat, the cat! a1 b22 ccc") == ["the", "cat", "sat", "mat", "b22", "ccc"]

    def test_tokenize_caps_token_count(self):
        assert len(tokenize(" ".join(f"word{i}" for i in range(100)))) == 40

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [0.6, 0.8]) == pytest.approx(0.6)
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_lexical_overlap(self):
        assert lexical_overlap(["alpha", "bravo", "charlie", "delta"], ["alpha", "zulu"]) == 0.25
        assert lexical_overlap([], ["alpha"]) == 0.0

    def test_truncate_marks_cut_with_single_ellipsis(self):
        assert truncate("abcdef", 10) == "abcdef"
        assert truncate("abcdef", 4) == "abc…"
        assert truncate("ab   cdef", 4) == "ab…"
        assert truncate(None, 4) == ""


class TestRanking:
    def test_hybrid_score_is_cosine_plus_weighted_overlap(self, retrieval):
        document = make_document(caption="", text="alpha", embedding=[1.0, 0.0])
        query_embedding = [0.5, math.sqrt(0.75)]

        candidate = retrieval.score(document, query_embedding, ["alpha", "bravo", "charlie", "delta"])

        assert candidate.cosine_score == pytest.approx(0.50)
        assert candidate.lexical_overlap == pytest.approx(0.25)
        assert candidate.hybrid_score == pytest.approx(0.52)

    def test_weak_cosine_and_weak_overlap_is_excluded(self, retrieval):
        assert not retrieval.passes_thresholds(_candidate(cosine=0.10, overlap=0.20))

    def test_strong_overlap_admits_weak_cosine_if_hybrid_is_high_enough(self, retrieval):
        assert retrieval.passes_thresholds(_candidate(cosine=0.12, overlap=1.0))
        assert not retrieval.passes_thresholds(_candidate(cosine=0.10, overlap=1.0))

    def test_good_cosine_passes(self, retrieval):
        assert retrieval.passes_thresholds(_candidate(cosine=0.19, overlap=0.0))
        assert not retrieval.passes_thresholds(_candidate(cosine=0.185, overlap=0.0))

    def test_rank_is_stable_and_clamps_top_k(self, retrieval):
        candidates = [_candidate(cosine=0.5, overlap=0.0) for _ in range(8)]
        ranked = retrieval.rank(candidates, top_k=50)
        assert len(ranked) == 6
        assert [c.document.id for c in ranked] == [c.document.id for c in candidates[:6]]
        assert len(retrieval.rank(candidates, top_k=0)) == 1

    def test_context_line_format(self, retrieval):
        document = make_document(caption="Lunch receipt", text="Total 12.50", categories=["receipts"])
        candidate = RetrievalCandidate(document=document, cosine_score=0.5, lexical_overlap=0.25, hybrid_score=0.52)

        assert retrieval.build_context([candidate]) == (
            "score:0.520 cos:0.500 lex:0.25 | caption:Lunch receipt | categories:receipts | text:Total 12.50"
        )


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_no_documents(self, retrieval):
        result = await retrieval.do_retrieve("where is my receipt", 5, OWNER)
        assert result.ranked == []
        assert result.reason == REASON_NO_DOCUMENTS

    @pytest.mark.asyncio
    async def test_category_filter_end_to_end(self, retrieval, repo):
        document = await repo.do_save_document(make_document(categories=["receipts"], embedding=[1.0, 0.0]))

        filtered_out = await retrieval.do_retrieve("lunch", 5, OWNER, category="invoices")
        assert filtered_out.ranked == []
        assert filtered_out.reason == 'No documents found in "invoices".'

        result = await retrieval.do_retrieve("lunch", 5, OWNER, category="0001. Receipts")
        assert [c.document.id for c in result.ranked] == [document.id]
        assert result.ranked[0].cosine_score == pytest.approx(0.6)
        assert result.reason is None
        assert "categories:receipts" in result.context_text

    @pytest.mark.parametrize("category", ["### 7", "123", "!!!"])
    @pytest.mark.asyncio
    async def test_unusable_category_filter_does_not_widen_the_search(self, retrieval, repo, fake_llm, category):
        await repo.do_save_document(make_document(categories=["receipts"]))

        result = await retrieval.do_retrieve("lunch", 5, OWNER, category=category)

        assert result.ranked == []
        assert result.reason == REASON_INVALID_CATEGORY
        assert fake_llm.embed_calls == []

    @pytest.mark.asyncio
    async def test_blank_category_filter_is_ignored(self, retrieval, repo):
        document = await repo.do_save_document(make_document(categories=["receipts"]))

        result = await retrieval.do_retrieve("lunch", 5, OWNER, category="   ")

        assert [c.document.id for c in result.ranked] == [document.id]

    @pytest.mark.asyncio
    async def test_documents_of_other_owners_are_invisible(self, retrieval, repo):
        await repo.do_save_document(make_document(owner_id="someone_else"))
        result = await retrieval.do_retrieve("lunch", 5, OWNER)
        assert result.reason == REASON_NO_DOCUMENTS

    @pytest.mark.asyncio
    async def test_irrelevant_documents_give_no_relevant_reason(self, retrieval, repo):
        await repo.do_save_document(make_document(embedding=[0.0, -1.0], text="nothing in common"))
        result = await retrieval.do_retrieve("lunch", 5, OWNER)
        assert result.ranked == []
        assert result.reason == REASON_NO_RELEVANT

    @pytest.mark.asyncio
    async def test_document_filter_skips_thresholds(self, retrieval, repo):
        document = await repo.do_save_document(make_document(embedding=[0.0, -1.0]))
        result = await retrieval.do_retrieve("lunch", 5, OWNER, document_id=document.id)
        assert [c.document.id for c in result.ranked] == [document.id]

    @pytest.mark.asyncio
    async def test_document_filter_reasons(self, retrieval, repo):
        pending = await repo.do_save_document(make_document(embedding=[]))

        missing = await retrieval.do_retrieve("lunch", 5, OWNER, document_id="does-not-exist")
        assert missing.reason == REASON_DOCUMENT_NOT_FOUND

        not_indexed = await retrieval.do_retrieve("lunch", 5, OWNER, document_id=pending.id)
        assert not_indexed.reason == REASON_DOCUMENT_NOT_INDEXED

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_embedding(self, retrieval, repo, fake_llm):
        await repo.do_save_document(make_document())
        token = CancelToken()
        token.cancel()

        with pytest.raises(QueryCancelledError):
            await retrieval.do_retrieve("lunch", 5, OWNER, cancel_token=token)
        assert fake_llm.embed_calls == []
