"""Pydantic models for search requests, retrieval results and answers."""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.document import Document, PublicDocument

USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,128}$")
DEFAULT_USER_ID = "public"
DEFAULT_TOP_K = 5


class SearchRequest(BaseModel):
    """Incoming natural language question, shared by the HTTP and WebSocket transports.

    Field names are accepted in camelCase (as sent by the app) or snake_case.
    """

    model_config = ConfigDict(populate_by_name=True)

    query: str
    top_k: int = Field(default=DEFAULT_TOP_K, alias="topK")
    category: str | None = None
    document_id: str | None = Field(default=None, alias="documentId")
    model: str | None = None

    @field_validator("query")
    @classmethod
    def _query_not_empty(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("query is required")
        return value

    @field_validator("category", "document_id", "model")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("top_k", mode="before")
    @classmethod
    def _coerce_top_k(cls, value) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return DEFAULT_TOP_K


class SearchMessage(SearchRequest):
    """WebSocket text frame: {"type": "search", ..., "userId": "..."}."""

    type: str = "search"
    user_id: str | None = Field(default=None, alias="userId")


class RetrievalCandidate(BaseModel):
    """A scored document for one query. Never persisted."""

    document: Document
    cosine_score: float
    lexical_overlap: float
    hybrid_score: float


class RetrievalResult(BaseModel):
    """Outcome of a retrieval: the prompt context, the ranked candidates and,
    when nothing was found, a human-readable reason."""

    context_text: str = ""
    ranked: list[RetrievalCandidate] = []
    reason: str | None = None


class MatchItem(PublicDocument):
    """A retrieved document as sent to the client, with its hybrid score."""

    score: float


class AnswerResponse(BaseModel):
    """Non-streaming answer payload."""

    answer: str
    matches: list[MatchItem]
