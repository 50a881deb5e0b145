from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class IngestRequest(BaseModel):
    """POST /api/docs body. Category candidates are optional; without them the text is analysed by the chat model."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str
    caption: str | None = None
    original_name: str = ""
    existing_categories: list[str] = []
    new_categories: list[str] = []
    created_at: int | None = None

    @field_validator("text")
    @classmethod
    def _text_not_empty(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("text is required")
        return value


class CategoryRenameRequest(BaseModel):
    to: str = ""
