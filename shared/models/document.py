"""Pydantic models for indexed documents and categories.

Hierarchy:
  Document          - one indexed item as held by the repository, embedding included.
  PublicDocument    - the document as returned to clients (no embedding).
  CategoryCount     - a canonical category with the number of linked documents.
  CategoryDeleteResult / CategoryRenameResult - outcomes of category maintenance.
"""

import time
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_document_id() -> str:
    """Return a fresh opaque document id."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def now_millis() -> int:
    return int(time.time() * 1000)


class MediaType(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    OTHER = "other"


class CategoryDeleteMode(str, Enum):
    """How documents linked to a deleted category are treated.

    UNLINK:                 remove the category from its documents, keep the documents.
    PURGE:                  delete every document linked to the category.
    UNLINK_DELETE_ORPHANS:  unlink, then delete documents left without any category.
    """

    UNLINK = "unlink"
    PURGE = "purge"
    UNLINK_DELETE_ORPHANS = "unlink-delete-orphans"


class Document(BaseModel):
    """Backend-independent document record.

    The owner_id is mandatory; every repository read and write is scoped to it.
    The categories list always holds canonical category names.
    """

    id: str = Field(default_factory=new_document_id)
    owner_id: str
    caption: str = ""
    text: str = ""
    categories: list[str] = []
    embedding: list[float] = []
    created_at: int = Field(default_factory=now_millis)
    original_name: str = ""
    media_type: MediaType = MediaType.TEXT
    file_mime: str = "text/plain"

    def is_searchable(self) -> bool:
        """A document takes part in retrieval once it has an embedding and a category."""
        return bool(self.embedding) and bool(self.categories)

    def to_public(self) -> "PublicDocument":
        return PublicDocument(**self.model_dump(exclude={"embedding"}))


class PublicDocument(BaseModel):
    """Document as exposed over the API, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    owner_id: str
    caption: str
    text: str
    categories: list[str]
    created_at: int
    original_name: str = ""
    media_type: MediaType = MediaType.TEXT
    file_mime: str = "text/plain"


class CategoryCount(BaseModel):
    name: str
    count: int


class CategoryDeleteResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    removed_from: int = 0
    deleted_docs: int = 0


class CategoryRenameResult(BaseModel):
    changed: int = 0
