"""Hybrid retrieval: cosine similarity of embeddings plus lexical token overlap."""

import math
import re

from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.repo.RepoClientInterface import RepoClientInterface
from shared.helper.cancel_helper import CancelToken
from shared.helper.category_helper import canonicalize_category
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import Document
from shared.models.search import RetrievalCandidate, RetrievalResult

# strong lexical signal that admits a candidate despite a weak cosine score
LEXICAL_OVERLAP_GATE = 0.34
MAX_TOKENS = 40

_TOKEN_PATTERN = re.compile(r"[a-z0-9]{3,}")

REASON_NO_DOCUMENTS = "No documents indexed yet."
REASON_NO_RELEVANT = "No relevant documents found for that question."
REASON_DOCUMENT_NOT_FOUND = "Document not found."
REASON_DOCUMENT_NOT_INDEXED = "That document has not been indexed yet."
REASON_INVALID_CATEGORY = "Invalid category filter."


def reason_no_category_match(category: str) -> str:
    return f'No documents found in "{category}".'


def tokenize(text: str | None) -> list[str]:
    """Lower-case alphanumeric tokens of at least 3 characters, deduplicated in order, at most 40."""
    tokens = _TOKEN_PATTERN.findall(str(text or "").lower())
    return list(dict.fromkeys(tokens))[:MAX_TOKENS]


def cosine_similarity(left: list[float], right: list[float]) -> float:
    """Cosine similarity of two vectors. 0 if either is empty or their lengths differ."""
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / (norm or 1.0)


def lexical_overlap(query_tokens: list[str], document_tokens: list[str]) -> float:
    """Fraction of query tokens that also occur in the document."""
    if not query_tokens:
        return 0.0
    present = set(document_tokens)
    return sum(1 for token in query_tokens if token in present) / len(query_tokens)


def truncate(text: str | None, max_chars: int) -> str:
    """Cut text to max_chars, marking the cut with a single ellipsis character."""
    value = str(text or "")
    if len(value) <= max_chars:
        return value
    return value[: max(0, max_chars - 1)].rstrip() + "…"


class RetrievalService:
    """Ranks an owner's documents against a question and builds the prompt context."""

    def __init__(
        self,
        helper_config: HelperConfig,
        repo_client: RepoClientInterface,
        llm_client: LLMClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._repo = repo_client
        self._llm_client = llm_client

        self.top_k_max = max(1, int(helper_config.get_number_val("RAG_TOPK_MAX", default=6)))
        self.min_cosine = float(helper_config.get_number_val("RAG_MIN_COSINE", default=0.18))
        self.lexical_weight = float(helper_config.get_number_val("RAG_LEXICAL_WEIGHT", default=0.08))
        self.min_hybrid_score = float(helper_config.get_number_val("RAG_MIN_HYBRID_SCORE", default=0.19))
        self.doc_text_max_chars = int(helper_config.get_number_val("RAG_DOC_TEXT_MAX_CHARS", default=420))
        self.doc_caption_max_chars = int(helper_config.get_number_val("RAG_DOC_CAPTION_MAX_CHARS", default=120))

    ##########################################
    ################ SCORING #################
    ##########################################

    def clamp_top_k(self, top_k: int | None) -> int:
        try:
            value = int(top_k or 0)
        except (TypeError, ValueError):
            value = 0
        return max(1, min(self.top_k_max, value))

    def score(self, document: Document, query_embedding: list[float], query_tokens: list[str]) -> RetrievalCandidate:
        """Score one document against the query.

        Returns:
            RetrievalCandidate: cosine, lexical overlap and their weighted sum.
        """
        blob = f"{document.caption}\n{' '.join(document.categories)}\n{document.text}"
        cosine = cosine_similarity(query_embedding, document.embedding)
        overlap = lexical_overlap(query_tokens, tokenize(blob))
        return RetrievalCandidate(
            document=document,
            cosine_score=cosine,
            lexical_overlap=overlap,
            hybrid_score=cosine + self.lexical_weight * overlap,
        )

    def passes_thresholds(self, candidate: RetrievalCandidate) -> bool:
        """Either a reasonable semantic or a strong lexical signal, and a minimum combined score."""
        signal = candidate.cosine_score >= self.min_cosine or candidate.lexical_overlap >= LEXICAL_OVERLAP_GATE
        return signal and candidate.hybrid_score >= self.min_hybrid_score

    def rank(self, candidates: list[RetrievalCandidate], top_k: int, apply_thresholds: bool = True) -> list[RetrievalCandidate]:
        kept = [c for c in candidates if self.passes_thresholds(c)] if apply_thresholds else list(candidates)
        # sorted() is stable, equal scores keep repository order
        kept = sorted(kept, key=lambda c: c.hybrid_score, reverse=True)
        return kept[: self.clamp_top_k(top_k)]

    def build_context(self, ranked: list[RetrievalCandidate]) -> str:
        """Render one context line per ranked candidate for the generation prompt."""
        lines: list[str] = []
        for candidate in ranked:
            doc = candidate.document
            caption = truncate(doc.caption, self.doc_caption_max_chars)
            text = truncate(doc.text, self.doc_text_max_chars)
            categories = ", ".join(c for c in (canonicalize_category(raw) for raw in doc.categories) if c)
            lines.append(
                f"score:{candidate.hybrid_score:.3f} cos:{candidate.cosine_score:.3f} lex:{candidate.lexical_overlap:.2f}"
                f" | caption:{caption} | categories:{categories} | text:{text}"
            )
        return "\n".join(lines)

    ##########################################
    ############### RETRIEVAL ################
    ##########################################

    async def _resolve_candidates(
        self,
        owner_id: str,
        category: str | None,
        document_id: str | None,
    ) -> tuple[list[Document], str | None]:
        if document_id:
            document = await self._repo.do_get_document(owner_id, document_id)
            if document is None:
                return [], REASON_DOCUMENT_NOT_FOUND
            if not document.embedding:
                return [], REASON_DOCUMENT_NOT_INDEXED
            return [document], None

        category_key = canonicalize_category(category) if category else ""
        # a filter that canonicalizes to nothing must not widen the search to every document
        if category and category.strip() and not category_key:
            return [], REASON_INVALID_CATEGORY

        searchable = await self._repo.do_list_searchable_documents(owner_id)
        if not searchable:
            return [], REASON_NO_DOCUMENTS

        if not category_key:
            return searchable, None
        filtered = [
            doc for doc in searchable
            if any(canonicalize_category(raw) == category_key for raw in doc.categories)
        ]
        if not filtered:
            return [], reason_no_category_match(category_key)
        return filtered, None

    async def do_retrieve(
        self,
        query: str,
        top_k: int,
        owner_id: str,
        category: str | None = None,
        document_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> RetrievalResult:
        """Find the documents most relevant to a question.

        With a document_id the candidate set is that single document and it is
        scored without threshold filtering. Otherwise every searchable document
        of the owner (optionally restricted to one category) is scored, filtered
        and ranked.

        Args:
            query (str): The question.
            top_k (int): Requested number of results, clamped into [1, RAG_TOPK_MAX].
            owner_id (str): The owner whose documents are searched.
            category (str | None): Optional category filter, canonicalized before use.
            document_id (str | None): Restrict the search to this document.
            cancel_token (CancelToken | None): Aborts the retrieval between steps.

        Returns:
            RetrievalResult: The context text and ranked candidates, or a reason when empty.

        Raises:
            QueryCancelledError: If the cancel token fires during retrieval.
            LLMRequestError: If the query embedding fails.
            RepositoryError: If the repository is unavailable.
        """
        candidates, reason = await self._resolve_candidates(owner_id, category, document_id)
        if reason:
            self.logging.debug("Retrieval for owner %s stopped early: %s", owner_id, reason)
            return RetrievalResult(reason=reason)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        query_embedding = await self._llm_client.do_embed_text(query)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        query_tokens = tokenize(query)
        scored = [self.score(doc, query_embedding, query_tokens) for doc in candidates]
        ranked = self.rank(scored, top_k, apply_thresholds=not document_id)
        if not ranked:
            return RetrievalResult(reason=REASON_NO_RELEVANT)

        self.logging.debug(
            "Retrieved %d of %d candidate(s) for owner %s (best %.3f).",
            len(ranked), len(candidates), owner_id, ranked[0].hybrid_score,
        )
        return RetrievalResult(context_text=self.build_context(ranked), ranked=ranked)
