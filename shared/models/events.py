"""Transport-agnostic events produced by the answer orchestrator.

Every event serializes to a JSON object tagged by `type`. The SSE adapter
writes one event per `data:` frame, the WebSocket adapter one event per text
frame.
"""

from typing import Literal, Union

from pydantic import BaseModel

from shared.models.search import MatchItem


class MatchesEvent(BaseModel):
    type: Literal["matches"] = "matches"
    matches: list[MatchItem]


class ChunkEvent(BaseModel):
    type: Literal["chunk"] = "chunk"
    text: str


class InfoEvent(BaseModel):
    """Terminal-ish notice for empty results. Always followed by DoneEvent."""

    type: Literal["info"] = "info"
    message: str


class ErrorEvent(BaseModel):
    """Terminal failure. Quota denials carry the structured quota fields."""

    type: Literal["error"] = "error"
    message: str
    error: str | None = None
    code: str | None = None
    scope: str | None = None
    used: int | None = None
    limit: int | None = None
    plan: str | None = None


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


QueryEvent = Union[MatchesEvent, ChunkEvent, InfoEvent, ErrorEvent, DoneEvent]

TERMINAL_EVENT_TYPES = ("done", "error")


def event_payload(event: QueryEvent) -> dict:
    """Return the JSON-serialisable payload of an event, without unset optional fields."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)
