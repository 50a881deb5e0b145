"""Gated text ingestion.

Flow: validate → upload gate (counts the upload) → category vocabulary →
analysis (chat model, unless the caller supplies it) → choose_category →
embedding → persist.
"""

import json

from pydantic import ValidationError

from services.usage_gate.UsageGate import UsageGate
from shared.clients.llm.LLMClientInterface import LLMClientInterface
from shared.clients.repo.RepoClientInterface import RepoClientInterface
from shared.helper.category_helper import canonicalize_category, choose_category
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import Document, MediaType, new_document_id, now_millis
from shared.models.errors import LLMRequestError
from shared.models.ingest import IngestAnalysis

DEFAULT_CAPTION = "Document"
VOCABULARY_CONTEXT_CEILING = 200

ANALYSIS_SYSTEM_PROMPT = (
    "You summarize documents and categorize them. Choose exactly 1 category per document, "
    "preferring an existing category when it fits."
)


def build_analysis_prompt(text: str, vocabulary: list[str]) -> str:
    return (
        "Return JSON with caption, existingCategories, newCategories, text array.\n"
        "Rules:\n"
        "- Prefer the provided existing categories when the document fits.\n"
        "- Output exactly 1 category total.\n"
        "- If a provided category fits, set existingCategories to a 1-item array (picked verbatim) "
        "and set newCategories to an empty array.\n"
        "- If none fit, set existingCategories to an empty array and set newCategories to a 1-item array.\n"
        "- The chosen category should be stable and reusable (not overly specific).\n"
        "- Never include numbers, ids, timestamps, or list indices in categories.\n"
        f"Existing categories: {json.dumps(vocabulary)}\n\n"
        f"Document:\n{text}"
    )


class IngestService:
    """Indexes text documents for an owner."""

    def __init__(
        self,
        helper_config: HelperConfig,
        usage_gate: UsageGate,
        repo_client: RepoClientInterface,
        llm_client: LLMClientInterface,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._usage_gate = usage_gate
        self._repo = repo_client
        self._llm_client = llm_client
        self.text_max_chars = int(helper_config.get_number_val("INGEST_TEXT_MAX_CHARS", default=4000))
        context_limit = int(helper_config.get_number_val("MAX_EXISTING_CATEGORIES_CONTEXT", default=50))
        self.vocabulary_limit = max(0, min(VOCABULARY_CONTEXT_CEILING, context_limit))

    ##########################################
    ################ ANALYSIS ################
    ##########################################

    async def get_vocabulary(self, owner_id: str) -> list[str]:
        """The owner's most used categories, offered to the analysis as existing choices."""
        categories = await self._repo.do_list_categories(owner_id, limit=self.vocabulary_limit)
        return [c.name for c in categories]

    async def do_analyze(self, text: str, vocabulary: list[str]) -> IngestAnalysis:
        """Ask the chat model for caption, category candidates and cleaned text lines.

        Raises:
            LLMRequestError: If the chat request fails or the reply is not a valid analysis object.
        """
        messages = [
            {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": build_analysis_prompt(text, vocabulary)},
        ]
        reply = await self._llm_client.do_chat(messages, json_output=True)
        try:
            return IngestAnalysis.model_validate(json.loads(reply))
        except (ValueError, ValidationError) as e:
            self.logging.error("Invalid document analysis returned by the chat model: %s", e)
            raise LLMRequestError("Document analysis failed: the model did not return valid JSON.") from e

    ##########################################
    ################ INGEST ##################
    ##########################################

    async def do_ingest_text(
        self,
        owner_id: str,
        text: str,
        caption: str | None = None,
        original_name: str = "",
        existing_categories: list[str] | None = None,
        new_categories: list[str] | None = None,
        created_at: int | None = None,
    ) -> Document:
        """Index one text document.

        If the caller supplies category candidates the chat analysis is
        skipped; the candidates still go through choose_category().

        Args:
            owner_id (str): The owning user.
            text (str): Extracted text of the document.
            caption (str | None): Short description. Generated when omitted.
            original_name (str): File name shown in the app.
            existing_categories (list[str] | None): Candidates from the owner's vocabulary.
            new_categories (list[str] | None): Candidates for new categories.
            created_at (int | None): Epoch millis. Defaults to now.

        Returns:
            Document: The stored document.

        Raises:
            ValueError: If text is empty.
            QuotaExceededError: If the upload limit is reached.
            LLMRequestError: If analysis or embedding fails.
            RepositoryError: If the repository is unavailable.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("text is required")
        text = text[: self.text_max_chars]

        await self._usage_gate.admit_upload(owner_id)

        vocabulary = await self.get_vocabulary(owner_id)
        if existing_categories or new_categories:
            analysis = IngestAnalysis(
                caption=caption or "",
                existing_categories=existing_categories or [],
                new_categories=new_categories or [],
                text=[text],
            )
        else:
            analysis = await self.do_analyze(text, vocabulary)

        category = choose_category(analysis.existing_categories, analysis.new_categories, vocabulary)
        final_caption = (caption or analysis.caption or DEFAULT_CAPTION).strip()
        body = " ".join(line.strip() for line in analysis.text if line.strip()) or text

        embedding = await self._llm_client.do_embed_text("\n".join([final_caption, body]))
        document = Document(
            id=new_document_id(),
            owner_id=owner_id,
            caption=final_caption,
            text=body,
            categories=[category],
            embedding=embedding,
            created_at=created_at or now_millis(),
            original_name=original_name or "",
            media_type=MediaType.TEXT,
            file_mime="text/plain",
        )
        stored = await self._repo.do_save_document(document)

        self.logging.info(
            "Indexed document %s for owner %s in category '%s'%s.",
            stored.id, owner_id, category,
            "" if canonicalize_category(category) in vocabulary else " (new)",
        )
        return stored
