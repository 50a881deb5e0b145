from abc import abstractmethod
from datetime import date

from shared.clients.ClientInterface import ClientInterface
from shared.helper.category_helper import clamp_categories
from shared.helper.HelperConfig import HelperConfig
from shared.models.document import (
    CategoryCount,
    CategoryDeleteMode,
    CategoryDeleteResult,
    CategoryRenameResult,
    Document,
)
from shared.models.quota import Entitlement, UsageCounters


class RepoClientInterface(ClientInterface):
    """Document, category and usage repository.

    Every operation is scoped by owner/user id. Category names are passed
    through canonicalize_category() before they are stored or compared, and
    lookups also match legacy stored names by re-canonicalizing them.
    Usage counters are only ever changed by additive increments.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.max_categories_per_doc = int(helper_config.get_number_val("MAX_CATEGORIES_PER_DOC", default=1))

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "repo"

    def prepare_categories(self, categories: list[str]) -> list[str]:
        """Canonicalize and cap a document's categories before storing them."""
        return clamp_categories(categories, self.max_categories_per_doc)

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    @abstractmethod
    async def do_list_documents(self, owner_id: str, include_embedding: bool = False) -> list[Document]:
        """List an owner's documents, newest first.

        Args:
            owner_id (str): The owner whose documents are listed.
            include_embedding (bool): Load the embedding vectors too.

        Returns:
            list[Document]: The documents. Embeddings are empty unless requested.
        """
        pass

    async def do_list_searchable_documents(self, owner_id: str) -> list[Document]:
        """List an owner's documents that have an embedding and at least one category."""
        documents = await self.do_list_documents(owner_id, include_embedding=True)
        return [doc for doc in documents if doc.is_searchable()]

    @abstractmethod
    async def do_get_document(self, owner_id: str, document_id: str) -> Document | None:
        """Fetch one document, embedding included.

        Returns:
            Document | None: The document, or None if it does not exist for this owner.
        """
        pass

    @abstractmethod
    async def do_save_document(self, document: Document) -> Document:
        """Insert a new document and link its categories (get-or-create).

        Returns:
            Document: The stored document with canonical categories.
        """
        pass

    @abstractmethod
    async def do_delete_document(self, owner_id: str, document_id: str) -> bool:
        """Delete a document and its category links.

        Returns:
            bool: True if a document was deleted.
        """
        pass

    ##########################################
    ############### CATEGORIES ###############
    ##########################################

    @abstractmethod
    async def do_list_categories(self, owner_id: str, limit: int | None = None) -> list[CategoryCount]:
        """List an owner's canonical categories with document counts.

        Sorted by count descending, then name ascending.
        """
        pass

    @abstractmethod
    async def do_rename_category(self, owner_id: str, from_name: str, to_name: str) -> CategoryRenameResult:
        """Rename a category. If the target exists, the source is merged into it and deleted."""
        pass

    @abstractmethod
    async def do_delete_category(self, owner_id: str, name: str, mode: CategoryDeleteMode) -> CategoryDeleteResult:
        """Delete a category, treating its documents according to mode."""
        pass

    ##########################################
    ################# USAGE ##################
    ##########################################

    @abstractmethod
    async def do_get_entitlement(self, user_id: str) -> Entitlement | None:
        """Return the stored entitlement of a user, or None."""
        pass

    @abstractmethod
    async def do_set_entitlement(self, entitlement: Entitlement) -> None:
        """Create or replace the entitlement of a user."""
        pass

    @abstractmethod
    async def do_get_usage(self, user_id: str, day: date) -> UsageCounters:
        """Return the user's message count for the given UTC day and the total upload count."""
        pass

    @abstractmethod
    async def do_increment_message_usage(self, user_id: str, day: date) -> int:
        """Add one to the user's message count of the given UTC day.

        Returns:
            int: The new count.
        """
        pass

    @abstractmethod
    async def do_increment_upload_usage(self, user_id: str) -> int:
        """Add one to the user's total upload count.

        Returns:
            int: The new count.
        """
        pass
