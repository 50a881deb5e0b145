import asyncio
import json
import os
from datetime import date

from shared.clients.repo.RepoClientInterface import RepoClientInterface
from shared.helper.category_helper import canonicalize_category
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.document import (
    CategoryCount,
    CategoryDeleteMode,
    CategoryDeleteResult,
    CategoryRenameResult,
    Document,
)
from shared.models.errors import RepositoryError
from shared.models.quota import Entitlement, UsageCounters


class RepoClientMemory(RepoClientInterface):
    """Local ephemeral repository held in process memory.

    If REPO_MEMORY_PERSIST_PATH is set, the state is loaded from that JSON file
    on boot and written back after every change, so a single-process dev
    server survives restarts.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._persist_path = self.get_config_val("PERSIST_PATH", default="", val_type="string")
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._snapshot_version = 0
        self._written_version = 0
        self._documents: dict[str, Document] = {}
        self._entitlements: dict[str, Entitlement] = {}
        self._message_usage: dict[str, int] = {}
        self._upload_usage: dict[str, int] = {}

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Memory"

    def _get_required_config(self) -> list[EnvConfig]:
        return [EnvConfig(env_key="PERSIST_PATH", val_type="string", default="")]

    @staticmethod
    def _usage_key(user_id: str, day: date) -> str:
        return f"{user_id}|{day.isoformat()}"

    def _owned(self, owner_id: str) -> list[Document]:
        docs = [doc for doc in self._documents.values() if doc.owner_id == owner_id]
        return sorted(docs, key=lambda doc: doc.created_at, reverse=True)

    ##########################################
    ############ CORE LIFECYCLE ##############
    ##########################################

    async def boot(self) -> None:
        if not self._persist_path or not os.path.exists(self._persist_path):
            return
        try:
            with open(self._persist_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            self.logging.warning("Failed to read repository snapshot %s: %s", self._persist_path, e)
            return
        for item in raw.get("documents", []):
            doc = Document.model_validate(item)
            doc.categories = self.prepare_categories(doc.categories) if doc.categories else []
            self._documents[doc.id] = doc
        for item in raw.get("entitlements", []):
            entitlement = Entitlement.model_validate(item)
            self._entitlements[entitlement.user_id] = entitlement
        self._message_usage = {str(k): int(v) for k, v in raw.get("message_usage", {}).items()}
        self._upload_usage = {str(k): int(v) for k, v in raw.get("upload_usage", {}).items()}
        self.logging.info("Loaded %d document(s) from %s.", len(self._documents), self._persist_path)

    async def close(self) -> None:
        async with self._lock:
            pending = self._take_snapshot()
        await self._persist(pending)

    async def do_healthcheck(self) -> bool:
        return True

    def _take_snapshot(self) -> tuple[int, dict] | None:
        """Capture the current state for writing. Call with self._lock held.

        Stored documents are replaced on change, never mutated, so shallow
        copies are enough and serialization can run off the event loop.
        """
        if not self._persist_path:
            return None
        self._snapshot_version += 1
        state = {
            "documents": list(self._documents.values()),
            "entitlements": list(self._entitlements.values()),
            "message_usage": dict(self._message_usage),
            "upload_usage": dict(self._upload_usage),
        }
        return self._snapshot_version, state

    async def _persist(self, pending: tuple[int, dict] | None) -> None:
        if pending is None:
            return
        version, state = pending
        async with self._write_lock:
            # a newer snapshot already reached the disk
            if version <= self._written_version:
                return
            await asyncio.to_thread(self._write_snapshot, state)
            self._written_version = version

    def _write_snapshot(self, state: dict) -> None:
        snapshot = {
            "documents": [doc.model_dump(mode="json") for doc in state["documents"]],
            "entitlements": [e.model_dump(mode="json") for e in state["entitlements"]],
            "message_usage": state["message_usage"],
            "upload_usage": state["upload_usage"],
        }
        tmp_path = f"{self._persist_path}.tmp"
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self._persist_path)), exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(snapshot, f)
            os.replace(tmp_path, self._persist_path)
        except OSError as e:
            raise RepositoryError(f"Failed to write repository snapshot: {e}") from e

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def do_list_documents(self, owner_id: str, include_embedding: bool = False) -> list[Document]:
        docs = self._owned(owner_id)
        if include_embedding:
            return [doc.model_copy(deep=True) for doc in docs]
        return [doc.model_copy(update={"embedding": []}, deep=True) for doc in docs]

    async def do_get_document(self, owner_id: str, document_id: str) -> Document | None:
        doc = self._documents.get(document_id)
        if doc is None or doc.owner_id != owner_id:
            return None
        return doc.model_copy(deep=True)

    async def do_save_document(self, document: Document) -> Document:
        stored = document.model_copy(update={"categories": self.prepare_categories(document.categories)}, deep=True)
        async with self._lock:
            if stored.id in self._documents:
                raise RepositoryError(f"Document {stored.id} already exists.")
            self._documents[stored.id] = stored
            pending = self._take_snapshot()
        await self._persist(pending)
        return stored.model_copy(deep=True)

    async def do_delete_document(self, owner_id: str, document_id: str) -> bool:
        async with self._lock:
            doc = self._documents.get(document_id)
            if doc is None or doc.owner_id != owner_id:
                return False
            del self._documents[document_id]
            pending = self._take_snapshot()
        await self._persist(pending)
        return True

    ##########################################
    ############### CATEGORIES ###############
    ##########################################

    async def do_list_categories(self, owner_id: str, limit: int | None = None) -> list[CategoryCount]:
        counts: dict[str, int] = {}
        for doc in self._owned(owner_id):
            for raw in doc.categories:
                key = canonicalize_category(raw)
                if key:
                    counts[key] = counts.get(key, 0) + 1
        ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        if limit is not None:
            ordered = ordered[: max(0, limit)]
        return [CategoryCount(name=name, count=count) for name, count in ordered]

    async def do_rename_category(self, owner_id: str, from_name: str, to_name: str) -> CategoryRenameResult:
        source = canonicalize_category(from_name)
        target = canonicalize_category(to_name)
        if not source or not target or source == target:
            return CategoryRenameResult(changed=0)

        changed = 0
        pending = None
        async with self._lock:
            for doc in self._owned(owner_id):
                if not any(canonicalize_category(c) == source for c in doc.categories):
                    continue
                renamed = [target if canonicalize_category(c) == source else c for c in doc.categories]
                self._documents[doc.id] = doc.model_copy(update={"categories": self.prepare_categories(renamed)})
                changed += 1
            if changed:
                pending = self._take_snapshot()
        await self._persist(pending)
        return CategoryRenameResult(changed=changed)

    async def do_delete_category(self, owner_id: str, name: str, mode: CategoryDeleteMode) -> CategoryDeleteResult:
        category = canonicalize_category(name)
        if not category:
            return CategoryDeleteResult()

        removed_from = 0
        deleted_docs = 0
        async with self._lock:
            for doc in self._owned(owner_id):
                if not any(canonicalize_category(c) == category for c in doc.categories):
                    continue
                if mode == CategoryDeleteMode.PURGE:
                    del self._documents[doc.id]
                    deleted_docs += 1
                    continue
                remaining = [c for c in doc.categories if canonicalize_category(c) != category]
                removed_from += 1
                if mode == CategoryDeleteMode.UNLINK_DELETE_ORPHANS and not remaining:
                    del self._documents[doc.id]
                    deleted_docs += 1
                    continue
                self._documents[doc.id] = doc.model_copy(update={"categories": remaining})
            pending = self._take_snapshot()
        await self._persist(pending)
        return CategoryDeleteResult(removed_from=removed_from, deleted_docs=deleted_docs)

    ##########################################
    ################# USAGE ##################
    ##########################################

    async def do_get_entitlement(self, user_id: str) -> Entitlement | None:
        entitlement = self._entitlements.get(user_id)
        return entitlement.model_copy() if entitlement else None

    async def do_set_entitlement(self, entitlement: Entitlement) -> None:
        async with self._lock:
            self._entitlements[entitlement.user_id] = entitlement.model_copy()
            pending = self._take_snapshot()
        await self._persist(pending)

    async def do_get_usage(self, user_id: str, day: date) -> UsageCounters:
        return UsageCounters(
            messages_used_today=self._message_usage.get(self._usage_key(user_id, day), 0),
            uploads_used_total=self._upload_usage.get(user_id, 0),
        )

    async def do_increment_message_usage(self, user_id: str, day: date) -> int:
        key = self._usage_key(user_id, day)
        today = day.isoformat()
        async with self._lock:
            # only the current day is ever read
            for stale in [k for k in self._message_usage if k.rsplit("|", 1)[-1] < today]:
                del self._message_usage[stale]
            used = self._message_usage.get(key, 0) + 1
            self._message_usage[key] = used
            pending = self._take_snapshot()
        await self._persist(pending)
        return used

    async def do_increment_upload_usage(self, user_id: str) -> int:
        async with self._lock:
            used = self._upload_usage.get(user_id, 0) + 1
            self._upload_usage[user_id] = used
            pending = self._take_snapshot()
        await self._persist(pending)
        return used
