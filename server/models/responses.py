from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from shared.models.document import CategoryCount, PublicDocument


class DocumentListResponse(BaseModel):
    docs: list[PublicDocument]


class DocumentResponse(BaseModel):
    doc: PublicDocument


class DeleteResponse(BaseModel):
    ok: bool = True


class CategoryListResponse(BaseModel):
    categories: list[CategoryCount]


class CategoryRenameResponse(BaseModel):
    ok: bool = True
    changed: int


class CategoryDeleteResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool = True
    removed_from: int
    deleted_docs: int
    remaining: int


class BackendHealth(BaseModel):
    engine: str
    ok: bool


class HealthResponse(BaseModel):
    ok: bool
    version: str
    repo: BackendHealth
    llm: BackendHealth
