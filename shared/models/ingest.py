"""Pydantic models for document ingestion."""

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IngestAnalysis(BaseModel):
    """Structured analysis of a new document, as returned by the chat model.

    Exactly one of existing_categories / new_categories is expected to hold a
    single label; anything else is resolved by choose_category().
    """

    model_config = ConfigDict(populate_by_name=True)

    caption: str = ""
    existing_categories: list[str] = Field(default=[], alias="existingCategories")
    new_categories: list[str] = Field(default=[], alias="newCategories")
    text: list[str] = []

    @field_validator("existing_categories", "new_categories", "text", mode="before")
    @classmethod
    def _as_list(cls, value) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value if v is not None]

    @field_validator("caption", mode="before")
    @classmethod
    def _as_str(cls, value) -> str:
        return "" if value is None else str(value).strip()
