import json
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator

import pytz
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    delete,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

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
from shared.models.quota import Entitlement, Plan, UsageCounters

metadata = MetaData()

documents_table = Table(
    "documents",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("owner_id", String(128), nullable=False, index=True),
    Column("caption", Text, nullable=False, default=""),
    Column("text", Text, nullable=False, default=""),
    Column("embedding", Text, nullable=False, default="[]"),
    Column("created_at", BigInteger, nullable=False),
    Column("original_name", String(255), nullable=False, default=""),
    Column("media_type", String(16), nullable=False, default="text"),
    Column("file_mime", String(128), nullable=False, default="text/plain"),
)

categories_table = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", String(128), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    UniqueConstraint("owner_id", "name", name="uniq_owner_category"),
)

document_categories_table = Table(
    "document_categories",
    metadata,
    Column("document_id", String(64), ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True, index=True),
    Column("sort_order", Integer, nullable=False, default=0),
)

entitlements_table = Table(
    "entitlements",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("plan", String(16), nullable=False, default="free"),
    Column("active", Boolean, nullable=False, default=True),
    Column("expires_at", DateTime(timezone=True), nullable=True),
)

message_usage_table = Table(
    "message_usage",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("day", String(10), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
)

upload_usage_table = Table(
    "upload_usage",
    metadata,
    Column("user_id", String(128), primary_key=True),
    Column("count", Integer, nullable=False, default=0),
)


class RepoClientSql(RepoClientInterface):
    """Durable relational repository on SQLAlchemy's async engine.

    REPO_SQL_URL takes any async SQLAlchemy URL, e.g.
    "mysql+aiomysql://user:pw@host/db" or "sqlite+aiosqlite:///data/nexus.db".
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._url = self.get_config_val("URL", default=None, val_type="string")
        self._auto_migrate = self.get_config_val("AUTO_MIGRATE", default=True, val_type="bool")
        self._engine: AsyncEngine | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Sql"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="URL", val_type="string", default=None),
            EnvConfig(env_key="AUTO_MIGRATE", val_type="bool", default=True),
        ]

    def _dialect(self) -> str:
        return self._engine.dialect.name if self._engine is not None else ""

    ##########################################
    ############ CORE LIFECYCLE ##############
    ##########################################

    async def boot(self) -> None:
        self._engine = create_async_engine(self._url, pool_pre_ping=True)
        if self._auto_migrate:
            async with self._transaction() as conn:
                await conn.run_sync(metadata.create_all)
            self.logging.info("Repository schema ensured (%s).", self._dialect())

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def do_healthcheck(self) -> bool:
        try:
            async with self._transaction() as conn:
                await conn.execute(text("SELECT 1"))
        except RepositoryError:
            return False
        return True

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncConnection]:
        """Open a connection inside a transaction; database errors become RepositoryError."""
        if self._engine is None:
            raise RepositoryError("Repository not initialised. Call boot() before making requests.")
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            self.logging.error("Repository operation failed: %s", e)
            raise RepositoryError(f"Repository unavailable: {e.__class__.__name__}") from e

    ##########################################
    ############### SQL HELPERS ##############
    ##########################################

    def _insert_ignore(self, table: Table, values: dict):
        """INSERT that silently skips rows violating a unique constraint."""
        dialect = self._dialect()
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as dialect_insert
            return dialect_insert(table).values(**values).on_conflict_do_nothing()
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as dialect_insert
            return dialect_insert(table).values(**values).on_conflict_do_nothing()
        if dialect in ("mysql", "mariadb"):
            return insert(table).values(**values).prefix_with("IGNORE")
        return insert(table).values(**values)

    def _increment_statement(self, table: Table, keys: dict):
        """Additive upsert: insert count=1 or add 1 to the existing row."""
        dialect = self._dialect()
        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            stmt = dialect_insert(table).values(**keys, count=1)
            return stmt.on_conflict_do_update(
                index_elements=list(keys.keys()),
                set_={"count": table.c["count"] + 1},
            )
        if dialect in ("mysql", "mariadb"):
            from sqlalchemy.dialects.mysql import insert as dialect_insert
            stmt = dialect_insert(table).values(**keys, count=1)
            return stmt.on_duplicate_key_update(count=table.c["count"] + 1)
        return None

    async def _increment(self, table: Table, keys: dict) -> int:
        conditions = [table.c[name] == value for name, value in keys.items()]
        stmt = self._increment_statement(table, keys)
        async with self._transaction() as conn:
            if stmt is not None:
                await conn.execute(stmt)
            else:
                result = await conn.execute(update(table).where(*conditions).values(count=table.c["count"] + 1))
                if result.rowcount == 0:
                    await conn.execute(insert(table).values(**keys, count=1))
            value = await conn.scalar(select(table.c["count"]).where(*conditions))
        return int(value or 0)

    async def _get_or_create_category(self, conn: AsyncConnection, owner_id: str, name: str) -> int:
        await conn.execute(self._insert_ignore(categories_table, {"owner_id": owner_id, "name": name}))
        category_id = await conn.scalar(
            select(categories_table.c.id).where(
                categories_table.c.owner_id == owner_id,
                categories_table.c.name == name,
            )
        )
        if category_id is None:
            raise RepositoryError(f"Could not create category {name!r}.")
        return int(category_id)

    async def _resolve_category_ids(self, conn: AsyncConnection, owner_id: str, name: str) -> list[int]:
        """Find every stored category of the owner that names the same category.

        Matches the raw lower-cased name directly and re-canonicalizes every
        stored name, so legacy noisy labels ("0001 reddit") are found too.
        """
        direct = str(name or "").strip().lower()
        canonical = canonicalize_category(name)
        if not direct and not canonical:
            return []
        rows = await conn.execute(
            select(categories_table.c.id, categories_table.c.name).where(categories_table.c.owner_id == owner_id)
        )
        ids: list[int] = []
        for row in rows:
            stored = str(row.name or "")
            if stored == direct or (canonical and canonicalize_category(stored) == canonical):
                ids.append(int(row.id))
        return ids

    async def _merge_categories(self, conn: AsyncConnection, owner_id: str, merge_ids: list[int], keep_id: int) -> None:
        """Move every link of merge_ids onto keep_id, keeping each document's category order, then drop merge_ids."""
        if not merge_ids:
            return
        links = await conn.execute(
            select(
                document_categories_table.c.document_id,
                func.min(document_categories_table.c.sort_order).label("sort_order"),
            )
            .where(document_categories_table.c.category_id.in_(merge_ids))
            .group_by(document_categories_table.c.document_id)
        )
        for link in links.all():
            await conn.execute(
                self._insert_ignore(
                    document_categories_table,
                    {
                        "document_id": str(link.document_id),
                        "category_id": keep_id,
                        "sort_order": int(link.sort_order or 0),
                    },
                )
            )
        await conn.execute(delete(document_categories_table).where(document_categories_table.c.category_id.in_(merge_ids)))
        await conn.execute(
            delete(categories_table).where(categories_table.c.owner_id == owner_id, categories_table.c.id.in_(merge_ids))
        )

    async def _document_ids_for_categories(self, conn: AsyncConnection, category_ids: list[int]) -> list[str]:
        if not category_ids:
            return []
        rows = await conn.execute(
            select(document_categories_table.c.document_id)
            .where(document_categories_table.c.category_id.in_(category_ids))
            .distinct()
        )
        return [str(row.document_id) for row in rows]

    async def _delete_documents(self, conn: AsyncConnection, owner_id: str, document_ids: list[str]) -> int:
        if not document_ids:
            return 0
        await conn.execute(
            delete(document_categories_table).where(document_categories_table.c.document_id.in_(document_ids))
        )
        result = await conn.execute(
            delete(documents_table).where(
                documents_table.c.owner_id == owner_id,
                documents_table.c.id.in_(document_ids),
            )
        )
        return int(result.rowcount or 0)

    @staticmethod
    def _row_to_document(row, categories: list[str], include_embedding: bool) -> Document:
        embedding: list[float] = []
        if include_embedding:
            try:
                embedding = [float(v) for v in json.loads(row.embedding or "[]")]
            except (TypeError, ValueError):
                embedding = []
        return Document(
            id=str(row.id),
            owner_id=str(row.owner_id),
            caption=row.caption or "",
            text=row.text or "",
            categories=categories,
            embedding=embedding,
            created_at=int(row.created_at),
            original_name=row.original_name or "",
            media_type=row.media_type or "text",
            file_mime=row.file_mime or "text/plain",
        )

    async def _load_categories(self, conn: AsyncConnection, document_ids: list[str]) -> dict[str, list[str]]:
        if not document_ids:
            return {}
        rows = await conn.execute(
            select(document_categories_table.c.document_id, categories_table.c.name)
            .join(categories_table, categories_table.c.id == document_categories_table.c.category_id)
            .where(document_categories_table.c.document_id.in_(document_ids))
            .order_by(document_categories_table.c.sort_order, categories_table.c.id)
        )
        result: dict[str, list[str]] = {}
        for row in rows:
            canonical = canonicalize_category(row.name)
            bucket = result.setdefault(str(row.document_id), [])
            if canonical and canonical not in bucket:
                bucket.append(canonical)
        return result

    ##########################################
    ############### DOCUMENTS ################
    ##########################################

    async def do_list_documents(self, owner_id: str, include_embedding: bool = False) -> list[Document]:
        async with self._transaction() as conn:
            rows = (
                await conn.execute(
                    select(documents_table)
                    .where(documents_table.c.owner_id == owner_id)
                    .order_by(documents_table.c.created_at.desc())
                )
            ).all()
            categories = await self._load_categories(conn, [str(row.id) for row in rows])
        return [self._row_to_document(row, categories.get(str(row.id), []), include_embedding) for row in rows]

    async def do_get_document(self, owner_id: str, document_id: str) -> Document | None:
        async with self._transaction() as conn:
            row = (
                await conn.execute(
                    select(documents_table).where(
                        documents_table.c.id == document_id,
                        documents_table.c.owner_id == owner_id,
                    )
                )
            ).first()
            if row is None:
                return None
            categories = await self._load_categories(conn, [document_id])
        return self._row_to_document(row, categories.get(document_id, []), include_embedding=True)

    async def do_save_document(self, document: Document) -> Document:
        stored = document.model_copy(update={"categories": self.prepare_categories(document.categories)})
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    insert(documents_table).values(
                        id=stored.id,
                        owner_id=stored.owner_id,
                        caption=stored.caption,
                        text=stored.text,
                        embedding=json.dumps(stored.embedding),
                        created_at=stored.created_at,
                        original_name=stored.original_name,
                        media_type=stored.media_type.value,
                        file_mime=stored.file_mime,
                    )
                )
                for position, name in enumerate(stored.categories):
                    category_id = await self._get_or_create_category(conn, stored.owner_id, name)
                    await conn.execute(
                        self._insert_ignore(
                            document_categories_table,
                            {"document_id": stored.id, "category_id": category_id, "sort_order": position},
                        )
                    )
        except RepositoryError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise RepositoryError(f"Document {stored.id} already exists.") from e
            raise
        return stored

    async def do_delete_document(self, owner_id: str, document_id: str) -> bool:
        async with self._transaction() as conn:
            deleted = await self._delete_documents(conn, owner_id, [document_id])
        return deleted > 0

    ##########################################
    ############### CATEGORIES ###############
    ##########################################

    async def do_list_categories(self, owner_id: str, limit: int | None = None) -> list[CategoryCount]:
        async with self._transaction() as conn:
            rows = await conn.execute(
                select(categories_table.c.name, func.count(document_categories_table.c.document_id).label("cnt"))
                .select_from(
                    categories_table.outerjoin(
                        document_categories_table,
                        document_categories_table.c.category_id == categories_table.c.id,
                    )
                )
                .where(categories_table.c.owner_id == owner_id)
                .group_by(categories_table.c.id, categories_table.c.name)
            )
            # legacy names may share a canonical form
            counts: dict[str, int] = {}
            for row in rows:
                key = canonicalize_category(row.name)
                if key and row.cnt:
                    counts[key] = counts.get(key, 0) + int(row.cnt)
        ordered = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        if limit is not None:
            ordered = ordered[: max(0, limit)]
        return [CategoryCount(name=name, count=count) for name, count in ordered]

    async def do_rename_category(self, owner_id: str, from_name: str, to_name: str) -> CategoryRenameResult:
        source = canonicalize_category(from_name)
        target = canonicalize_category(to_name)
        if not source or not target or source == target:
            return CategoryRenameResult(changed=0)

        async with self._transaction() as conn:
            source_ids = await self._resolve_category_ids(conn, owner_id, from_name)
            if not source_ids:
                return CategoryRenameResult(changed=0)
            document_ids = await self._document_ids_for_categories(conn, source_ids)

            # the target may exist under several legacy labels; all of them collapse into one row
            target_matches = await self._resolve_category_ids(conn, owner_id, to_name)
            target_ids = [cid for cid in target_matches if cid not in source_ids]
            candidates = target_ids or source_ids
            rows = await conn.execute(
                select(categories_table.c.id, categories_table.c.name).where(categories_table.c.id.in_(candidates))
            )
            exact = [int(row.id) for row in rows if row.name == target]
            keep_id = exact[0] if exact else min(candidates)

            merge_ids = [cid for cid in source_ids + target_ids if cid != keep_id]
            await self._merge_categories(conn, owner_id, merge_ids, keep_id)
            await conn.execute(
                update(categories_table)
                .where(categories_table.c.id == keep_id, categories_table.c.owner_id == owner_id)
                .values(name=target)
            )
        return CategoryRenameResult(changed=len(document_ids))

    async def do_delete_category(self, owner_id: str, name: str, mode: CategoryDeleteMode) -> CategoryDeleteResult:
        if not canonicalize_category(name):
            return CategoryDeleteResult()

        async with self._transaction() as conn:
            category_ids = await self._resolve_category_ids(conn, owner_id, name)
            if not category_ids:
                return CategoryDeleteResult()
            document_ids = await self._document_ids_for_categories(conn, category_ids)

            if mode == CategoryDeleteMode.PURGE:
                deleted_docs = await self._delete_documents(conn, owner_id, document_ids)
                await conn.execute(delete(categories_table).where(categories_table.c.id.in_(category_ids)))
                return CategoryDeleteResult(removed_from=0, deleted_docs=deleted_docs)

            await conn.execute(
                delete(document_categories_table).where(document_categories_table.c.category_id.in_(category_ids))
            )
            await conn.execute(delete(categories_table).where(categories_table.c.id.in_(category_ids)))
            if mode != CategoryDeleteMode.UNLINK_DELETE_ORPHANS or not document_ids:
                return CategoryDeleteResult(removed_from=len(document_ids), deleted_docs=0)

            linked = await conn.execute(
                select(document_categories_table.c.document_id)
                .where(document_categories_table.c.document_id.in_(document_ids))
                .distinct()
            )
            still_linked = {str(row.document_id) for row in linked}
            orphans = [doc_id for doc_id in document_ids if doc_id not in still_linked]
            deleted_docs = await self._delete_documents(conn, owner_id, orphans)
        return CategoryDeleteResult(removed_from=len(document_ids), deleted_docs=deleted_docs)

    ##########################################
    ################# USAGE ##################
    ##########################################

    async def do_get_entitlement(self, user_id: str) -> Entitlement | None:
        async with self._transaction() as conn:
            row = (
                await conn.execute(select(entitlements_table).where(entitlements_table.c.user_id == user_id))
            ).first()
        if row is None:
            return None
        expires_at = row.expires_at
        if expires_at is not None and expires_at.tzinfo is None:
            # sqlite drops the offset, values are written in UTC
            expires_at = pytz.utc.localize(expires_at)
        try:
            plan = Plan(row.plan)
        except ValueError:
            self.logging.warning("Unknown plan %r stored for user %s, treating as free.", row.plan, user_id)
            plan = Plan.FREE
        return Entitlement(user_id=user_id, plan=plan, active=bool(row.active), expires_at=expires_at)

    async def do_set_entitlement(self, entitlement: Entitlement) -> None:
        expires_at = entitlement.expires_at
        if expires_at is not None and expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(pytz.utc)
        values = {"plan": entitlement.plan.value, "active": entitlement.active, "expires_at": expires_at}
        async with self._transaction() as conn:
            result = await conn.execute(
                update(entitlements_table).where(entitlements_table.c.user_id == entitlement.user_id).values(**values)
            )
            if result.rowcount == 0:
                await conn.execute(insert(entitlements_table).values(user_id=entitlement.user_id, **values))

    async def do_get_usage(self, user_id: str, day: date) -> UsageCounters:
        async with self._transaction() as conn:
            messages = await conn.scalar(
                select(message_usage_table.c["count"]).where(
                    message_usage_table.c.user_id == user_id,
                    message_usage_table.c.day == day.isoformat(),
                )
            )
            uploads = await conn.scalar(select(upload_usage_table.c["count"]).where(upload_usage_table.c.user_id == user_id))
        return UsageCounters(messages_used_today=int(messages or 0), uploads_used_total=int(uploads or 0))

    async def do_increment_message_usage(self, user_id: str, day: date) -> int:
        return await self._increment(message_usage_table, {"user_id": user_id, "day": day.isoformat()})

    async def do_increment_upload_usage(self, user_id: str) -> int:
        return await self._increment(upload_usage_table, {"user_id": user_id})
