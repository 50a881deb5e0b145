"""Behaviour shared by every repository engine, run against memory and SQLite."""

import json
import threading
from datetime import date, datetime

import pytest
import pytest_asyncio
import pytz
from sqlalchemy import insert, select

from shared.clients.repo.memory.RepoClientMemory import RepoClientMemory
from shared.clients.repo.sql.RepoClientSql import RepoClientSql, categories_table, document_categories_table
from shared.models.document import CategoryDeleteMode
from shared.models.quota import Entitlement, Plan
from fakes.fake_clients import make_document

OWNER = "user_1"
DAY = date(2026, 3, 14)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, monkeypatch, tmp_path, helper_config):
    monkeypatch.setenv("MAX_CATEGORIES_PER_DOC", "3")
    if request.param == "sql":
        monkeypatch.setenv("REPO_SQL_URL", f"sqlite+aiosqlite:///{tmp_path / 'repo.db'}")
        client = RepoClientSql(helper_config=helper_config)
    else:
        client = RepoClientMemory(helper_config=helper_config)
    await client.boot()
    yield client
    await client.close()


async def _category_map(store) -> dict[str, int]:
    return {c.name: c.count for c in await store.do_list_categories(OWNER)}


class TestDocuments:
    @pytest.mark.asyncio
    async def test_save_canonicalizes_and_lists_newest_first(self, store):
        older = await store.do_save_document(make_document(categories=["0001. Receipts"], created_at=1))
        newer = await store.do_save_document(make_document(categories=["Travel!!", "travel"], created_at=2))

        assert older.categories == ["receipts"]
        assert newer.categories == ["travel"]
        listed = await store.do_list_documents(OWNER)
        assert [d.id for d in listed] == [newer.id, older.id]
        assert all(d.embedding == [] for d in listed)

    @pytest.mark.asyncio
    async def test_embeddings_are_loaded_on_request(self, store):
        saved = await store.do_save_document(make_document(embedding=[0.25, -0.5]))

        listed = await store.do_list_documents(OWNER, include_embedding=True)
        fetched = await store.do_get_document(OWNER, saved.id)

        assert listed[0].embedding == [0.25, -0.5]
        assert fetched.embedding == [0.25, -0.5]

    @pytest.mark.asyncio
    async def test_searchable_documents_need_embedding_and_category(self, store):
        searchable = await store.do_save_document(make_document())
        await store.do_save_document(make_document(embedding=[]))
        await store.do_save_document(make_document(categories=["### 1"]))

        assert [d.id for d in await store.do_list_searchable_documents(OWNER)] == [searchable.id]

    @pytest.mark.asyncio
    async def test_documents_are_owner_scoped(self, store):
        saved = await store.do_save_document(make_document(owner_id="other_user"))

        assert await store.do_get_document(OWNER, saved.id) is None
        assert await store.do_list_documents(OWNER) == []
        assert not await store.do_delete_document(OWNER, saved.id)
        assert await store.do_delete_document("other_user", saved.id)
        assert await store.do_get_document("other_user", saved.id) is None

    @pytest.mark.asyncio
    async def test_categories_keep_their_link_order(self, store):
        saved = await store.do_save_document(make_document(categories=["travel", "food", "bills"]))

        assert (await store.do_get_document(OWNER, saved.id)).categories == ["travel", "food", "bills"]
        assert (await store.do_list_documents(OWNER))[0].categories == ["travel", "food", "bills"]

        await store.do_rename_category(OWNER, "travel", "zoo")
        assert (await store.do_get_document(OWNER, saved.id)).categories == ["zoo", "food", "bills"]


class TestCategories:
    @pytest.mark.asyncio
    async def test_list_counts_sorted_by_count_then_name(self, store):
        await store.do_save_document(make_document(categories=["travel", "food"]))
        await store.do_save_document(make_document(categories=["travel"]))
        await store.do_save_document(make_document(categories=["bills"]))

        categories = await store.do_list_categories(OWNER)

        assert [(c.name, c.count) for c in categories] == [("travel", 2), ("bills", 1), ("food", 1)]
        assert [c.name for c in await store.do_list_categories(OWNER, limit=1)] == ["travel"]

    @pytest.mark.asyncio
    async def test_rename_to_new_name(self, store):
        saved = await store.do_save_document(make_document(categories=["receipts"]))

        result = await store.do_rename_category(OWNER, "Receipts", "2. Expenses")

        assert result.changed == 1
        assert (await store.do_get_document(OWNER, saved.id)).categories == ["expenses"]
        assert await _category_map(store) == {"expenses": 1}

    @pytest.mark.asyncio
    async def test_rename_into_existing_category_merges(self, store):
        both = await store.do_save_document(make_document(categories=["receipts", "expenses"]))
        await store.do_save_document(make_document(categories=["receipts"]))
        await store.do_save_document(make_document(categories=["expenses"]))

        result = await store.do_rename_category(OWNER, "receipts", "expenses")

        assert result.changed == 2
        assert await _category_map(store) == {"expenses": 3}
        assert (await store.do_get_document(OWNER, both.id)).categories == ["expenses"]

    @pytest.mark.asyncio
    async def test_rename_noops(self, store):
        await store.do_save_document(make_document(categories=["receipts"]))

        assert (await store.do_rename_category(OWNER, "receipts", "Receipts!")).changed == 0
        assert (await store.do_rename_category(OWNER, "unknown", "other")).changed == 0
        assert (await store.do_rename_category(OWNER, "receipts", "###")).changed == 0
        assert await _category_map(store) == {"receipts": 1}

    @pytest.mark.asyncio
    async def test_delete_unlink_keeps_documents(self, store):
        only = await store.do_save_document(make_document(categories=["receipts"]))
        shared = await store.do_save_document(make_document(categories=["receipts", "food"]))

        result = await store.do_delete_category(OWNER, "Receipts", CategoryDeleteMode.UNLINK)

        assert (result.removed_from, result.deleted_docs) == (2, 0)
        assert (await store.do_get_document(OWNER, only.id)).categories == []
        assert (await store.do_get_document(OWNER, shared.id)).categories == ["food"]
        assert await _category_map(store) == {"food": 1}

    @pytest.mark.asyncio
    async def test_delete_purge_removes_documents(self, store):
        await store.do_save_document(make_document(categories=["receipts"]))
        await store.do_save_document(make_document(categories=["receipts", "food"]))
        kept = await store.do_save_document(make_document(categories=["food"]))

        result = await store.do_delete_category(OWNER, "receipts", CategoryDeleteMode.PURGE)

        assert (result.removed_from, result.deleted_docs) == (0, 2)
        assert [d.id for d in await store.do_list_documents(OWNER)] == [kept.id]

    @pytest.mark.asyncio
    async def test_delete_unlink_delete_orphans(self, store):
        await store.do_save_document(make_document(categories=["receipts"]))
        shared = await store.do_save_document(make_document(categories=["receipts", "food"]))

        result = await store.do_delete_category(OWNER, "receipts", CategoryDeleteMode.UNLINK_DELETE_ORPHANS)

        assert (result.removed_from, result.deleted_docs) == (2, 1)
        remaining = await store.do_list_documents(OWNER)
        assert [(d.id, d.categories) for d in remaining] == [(shared.id, ["food"])]

    @pytest.mark.asyncio
    async def test_delete_unknown_or_empty_name(self, store):
        await store.do_save_document(make_document(categories=["receipts"]))

        for name in ("unknown", "### 4"):
            result = await store.do_delete_category(OWNER, name, CategoryDeleteMode.PURGE)
            assert (result.removed_from, result.deleted_docs) == (0, 0)
        assert len(await store.do_list_documents(OWNER)) == 1


class TestUsage:
    @pytest.mark.asyncio
    async def test_message_usage_is_per_day(self, store):
        assert await store.do_increment_message_usage(OWNER, DAY) == 1
        assert await store.do_increment_message_usage(OWNER, DAY) == 2
        assert (await store.do_get_usage(OWNER, DAY)).messages_used_today == 2
        assert (await store.do_get_usage("someone_else", DAY)).messages_used_today == 0

        next_day = date(2026, 3, 15)
        assert (await store.do_get_usage(OWNER, next_day)).messages_used_today == 0
        assert await store.do_increment_message_usage(OWNER, next_day) == 1
        assert (await store.do_get_usage(OWNER, next_day)).messages_used_today == 1

    @pytest.mark.asyncio
    async def test_upload_usage_is_a_lifetime_total(self, store):
        for _ in range(3):
            await store.do_increment_upload_usage(OWNER)

        assert (await store.do_get_usage(OWNER, DAY)).uploads_used_total == 3
        assert (await store.do_get_usage(OWNER, date(2030, 1, 1))).uploads_used_total == 3

    @pytest.mark.asyncio
    async def test_entitlement_round_trip_and_replace(self, store):
        assert await store.do_get_entitlement(OWNER) is None
        expires = datetime(2026, 4, 1, 12, 0, tzinfo=pytz.utc)

        await store.do_set_entitlement(Entitlement(user_id=OWNER, plan=Plan.PRO, expires_at=expires))
        stored = await store.do_get_entitlement(OWNER)
        assert (stored.plan, stored.active, stored.expires_at) == (Plan.PRO, True, expires)

        await store.do_set_entitlement(Entitlement(user_id=OWNER, plan=Plan.MAX, active=False))
        stored = await store.do_get_entitlement(OWNER)
        assert (stored.plan, stored.active, stored.expires_at) == (Plan.MAX, False, None)


@pytest_asyncio.fixture
async def sql_store(monkeypatch, tmp_path, helper_config):
    monkeypatch.setenv("REPO_SQL_URL", f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
    client = RepoClientSql(helper_config=helper_config)
    await client.boot()
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_sql_legacy_category_names_are_matched_canonically(sql_store):
    saved = await sql_store.do_save_document(make_document(categories=[]))
    async with sql_store._transaction() as conn:
        await conn.execute(insert(categories_table).values(owner_id=OWNER, name="0001 Reddit"))
        await conn.execute(
            insert(document_categories_table).values(document_id=saved.id, category_id=1)
        )

    assert [(c.name, c.count) for c in await sql_store.do_list_categories(OWNER)] == [("reddit", 1)]
    assert (await sql_store.do_get_document(OWNER, saved.id)).categories == ["reddit"]

    result = await sql_store.do_delete_category(OWNER, "Reddit", CategoryDeleteMode.UNLINK)
    assert result.removed_from == 1
    assert await sql_store.do_list_categories(OWNER) == []


@pytest.mark.asyncio
async def test_sql_rename_merges_into_a_legacy_target(sql_store):
    receipt = await sql_store.do_save_document(make_document(categories=["receipts"]))
    invoice = await sql_store.do_save_document(make_document(categories=[]))
    async with sql_store._transaction() as conn:
        result = await conn.execute(insert(categories_table).values(owner_id=OWNER, name="0001 Invoices"))
        legacy_id = result.inserted_primary_key[0]
        await conn.execute(
            insert(document_categories_table).values(document_id=invoice.id, category_id=legacy_id)
        )

    result = await sql_store.do_rename_category(OWNER, "receipts", "Invoices")

    assert result.changed == 1
    async with sql_store._transaction() as conn:
        rows = await conn.execute(select(categories_table.c.name).where(categories_table.c.owner_id == OWNER))
        names = rows.scalars().all()
    assert names == ["invoices"]
    assert [(c.name, c.count) for c in await sql_store.do_list_categories(OWNER)] == [("invoices", 2)]
    assert (await sql_store.do_get_document(OWNER, receipt.id)).categories == ["invoices"]
    assert (await sql_store.do_get_document(OWNER, invoice.id)).categories == ["invoices"]


@pytest.mark.asyncio
async def test_sql_client_requires_boot(monkeypatch, helper_config):
    monkeypatch.setenv("REPO_SQL_URL", "sqlite+aiosqlite:///:memory:")
    client = RepoClientSql(helper_config=helper_config)
    assert not await client.do_healthcheck()


@pytest.mark.asyncio
async def test_memory_snapshot_keeps_only_the_current_day(monkeypatch, tmp_path, helper_config):
    snapshot_path = tmp_path / "state.json"
    monkeypatch.setenv("REPO_MEMORY_PERSIST_PATH", str(snapshot_path))
    client = RepoClientMemory(helper_config=helper_config)
    await client.boot()

    await client.do_increment_message_usage(OWNER, DAY)
    await client.do_increment_message_usage("user_2", DAY)
    await client.do_increment_message_usage(OWNER, date(2026, 3, 15))
    await client.do_increment_upload_usage(OWNER)

    written = json.loads(snapshot_path.read_text(encoding="utf-8"))
    assert written["message_usage"] == {"user_1|2026-03-15": 1}
    assert written["upload_usage"] == {"user_1": 1}
    await client.close()


@pytest.mark.asyncio
async def test_memory_snapshot_is_written_off_the_event_loop(monkeypatch, tmp_path, helper_config):
    monkeypatch.setenv("REPO_MEMORY_PERSIST_PATH", str(tmp_path / "state.json"))
    client = RepoClientMemory(helper_config=helper_config)
    await client.boot()
    writer_threads = []
    write_snapshot = client._write_snapshot

    def recording_write(state):
        writer_threads.append(threading.current_thread())
        write_snapshot(state)

    monkeypatch.setattr(client, "_write_snapshot", recording_write)

    await client.do_increment_message_usage(OWNER, DAY)

    assert writer_threads
    assert all(thread is not threading.main_thread() for thread in writer_threads)
    await client.close()
