"""
Tests for all flow store backends.

Covers:
  - the BaseFlowStore contract, run against every backend:
      InMemoryFlowStore, FileFlowStore, SqlFlowStore (via SQLite)
  - FileFlowStore persistence across restarts
  - Store factory and URL translation
"""
import pytest
import pytest_asyncio

from database.store_base import SessionNotFoundError
from models.schemas import FlowStatus
from tests.helpers import USER, edge, make_flow, node


def sample_flow(flow_id="f1", user_id=USER, status=FlowStatus.ACTIVE):
    return make_flow(
        [node("a", "textMessage", text="hi"), node("b", "buttonMessage", buttons=[{"id": "1", "text": "Yes"}])],
        [edge("a", "b"), edge("b", "a", "1")],
        keywords=["hi"], flow_id=flow_id, user_id=user_id, status=status,
    )


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def backend_store(request, tmp_path):
    if request.param == "memory":
        from database.store_memory import InMemoryFlowStore
        yield InMemoryFlowStore()
    elif request.param == "file":
        from database.store_file import FileFlowStore
        yield FileFlowStore(data_dir=str(tmp_path / "data"))
    else:
        from database.connection import FlowDatabase
        from database.store import SqlFlowStore
        store = SqlFlowStore(FlowDatabase(f"sqlite:///{tmp_path / 'flows.db'}"))
        await store.initialize()
        yield store
        await store.close()


# ──────────────────────────────────────────────────────────────
#  Contract — sessions
# ──────────────────────────────────────────────────────────────

class TestSessionContract:
    @pytest.mark.asyncio
    async def test_create_and_get(self, backend_store):
        created = await backend_store.create_session(USER, "+1", "f1", "a", {"x": 1})
        got = await backend_store.get_session(USER, "+1")
        assert got.id == created.id
        assert got.flow_id == "f1"
        assert got.current_node_id == "a"
        assert got.variables == {"x": 1}
        assert await backend_store.get_session(USER, "+2") is None
        assert await backend_store.get_session("other", "+1") is None

    @pytest.mark.asyncio
    async def test_create_replaces_existing(self, backend_store):
        first = await backend_store.create_session(USER, "+1", "f1", "a")
        second = await backend_store.create_session(USER, "+1", "f2", "z")
        got = await backend_store.get_session(USER, "+1")
        assert got.id == second.id != first.id
        assert got.flow_id == "f2"

    @pytest.mark.asyncio
    async def test_update_patch(self, backend_store):
        s = await backend_store.create_session(USER, "+1", "f1", "a", {"keep": True})
        await backend_store.update_session(s.id, current_node_id="b")
        got = await backend_store.get_session(USER, "+1")
        assert got.current_node_id == "b"
        assert got.variables == {"keep": True}

        nested = {"order": {"items": [{"sku": "A"}], "total": 9.5}, "name": None}
        updated = await backend_store.update_session(s.id, variables=nested)
        assert updated.variables == nested
        assert (await backend_store.get_session(USER, "+1")).variables == nested
        assert (await backend_store.get_session(USER, "+1")).current_node_id == "b"

    @pytest.mark.asyncio
    async def test_returned_session_is_a_snapshot(self, backend_store):
        s = await backend_store.create_session(USER, "+1", "f1", "a", {"n": 1})
        s.variables["n"] = 99
        assert (await backend_store.get_session(USER, "+1")).variables == {"n": 1}

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, backend_store):
        with pytest.raises(SessionNotFoundError):
            await backend_store.update_session("nope", current_node_id="a")

    @pytest.mark.asyncio
    async def test_delete(self, backend_store):
        s = await backend_store.create_session(USER, "+1", "f1", "a")
        await backend_store.delete_session(s.id)
        assert await backend_store.get_session(USER, "+1") is None
        await backend_store.delete_session(s.id)


# ──────────────────────────────────────────────────────────────
#  Contract — flows
# ──────────────────────────────────────────────────────────────

class TestFlowContract:
    @pytest.mark.asyncio
    async def test_save_and_get_round_trip(self, backend_store):
        await backend_store.save_flow(sample_flow())
        got = await backend_store.get_flow("f1", USER)
        assert got.name == "f1"
        assert [n.id for n in got.graph.nodes] == ["a", "b"]
        assert got.graph.edges[1].source_handle == "1"
        assert got.graph.nodes[1].data["buttons"] == [{"id": "1", "text": "Yes"}]
        assert got.trigger.keywords == ["hi"]

    @pytest.mark.asyncio
    async def test_get_is_scoped_to_owner(self, backend_store):
        await backend_store.save_flow(sample_flow())
        assert await backend_store.get_flow("f1", "intruder") is None

    @pytest.mark.asyncio
    async def test_list_active_flows(self, backend_store):
        await backend_store.save_flow(sample_flow("old"))
        await backend_store.save_flow(sample_flow("draft", status=FlowStatus.DRAFT))
        await backend_store.save_flow(sample_flow("new"))
        await backend_store.save_flow(sample_flow("theirs", user_id="other"))
        flows = await backend_store.list_active_flows(USER)
        assert [f.id for f in flows] == ["old", "new"]

    @pytest.mark.asyncio
    async def test_save_existing_updates(self, backend_store):
        flow = sample_flow()
        await backend_store.save_flow(flow)
        await backend_store.save_flow(flow.model_copy(update={"name": "Renamed", "status": FlowStatus.INACTIVE}))
        got = await backend_store.get_flow("f1", USER)
        assert got.name == "Renamed"
        assert await backend_store.list_active_flows(USER) == []

    @pytest.mark.asyncio
    async def test_delete_flow(self, backend_store):
        await backend_store.save_flow(sample_flow())
        await backend_store.delete_flow("f1", "intruder")
        assert await backend_store.get_flow("f1", USER) is not None
        await backend_store.delete_flow("f1", USER)
        assert await backend_store.get_flow("f1", USER) is None


# ──────────────────────────────────────────────────────────────
#  FileFlowStore
# ──────────────────────────────────────────────────────────────

class TestFileFlowStore:
    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        from database.store_file import FileFlowStore
        data_dir = str(tmp_path / "data")
        store = FileFlowStore(data_dir=data_dir)
        await store.save_flow(sample_flow())
        s = await store.create_session(USER, "+1", "f1", "b", {"email": "a@b.com"})

        reopened = FileFlowStore(data_dir=data_dir)
        got = await reopened.get_session(USER, "+1")
        assert got.id == s.id
        assert got.variables == {"email": "a@b.com"}
        assert (await reopened.get_flow("f1", USER)).graph.nodes[0].id == "a"
        assert (tmp_path / "data" / "sessions.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_file_ignored(self, tmp_path):
        from database.store_file import FileFlowStore
        (tmp_path / "sessions.json").write_text("{not json")
        store = FileFlowStore(data_dir=str(tmp_path))
        assert await store.get_session(USER, "+1") is None


# ──────────────────────────────────────────────────────────────
#  Factory & URLs
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryFlowStore
        assert isinstance(create_store(), InMemoryFlowStore)

    def test_file_backend(self, tmp_path):
        from config.settings import DatabaseConfig
        from database.store_factory import create_store
        from database.store_file import FileFlowStore
        store = create_store(DatabaseConfig(store_backend="file", store_file_dir=str(tmp_path)))
        assert isinstance(store, FileFlowStore)

    def test_sql_backend(self):
        from database.store import SqlFlowStore
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlFlowStore)

    def test_sql_backend_uses_configured_url(self):
        from config.settings import DatabaseConfig
        from database.store_factory import create_store
        store = create_store(DatabaseConfig(url="sqlite:///./other.db", store_backend="sql"))
        assert store.db.url == "sqlite+aiosqlite:///./other.db"

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        assert get_store() is create_store({"store_backend": "file"})


class TestFlowDatabase:
    def test_async_urls(self):
        from database.connection import async_url
        assert async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"
        assert async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"
        assert async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    def test_redact_url(self):
        from database.connection import redact_url
        assert redact_url("postgresql+asyncpg://u:secret@h:5432/db") == "postgresql+asyncpg://h:5432/db"
        assert redact_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    @pytest.mark.asyncio
    async def test_create_tables_and_missing(self, tmp_path):
        from database.connection import FlowDatabase
        db = FlowDatabase(f"sqlite:///{tmp_path / 'schema.db'}")
        try:
            assert await db.missing_tables() == ["flow_sessions", "flows"]
            tables = await db.create_tables()
            assert {"flows", "flow_sessions"} <= set(tables)
            assert await db.missing_tables() == []
        finally:
            await db.dispose()

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self, tmp_path):
        from database.connection import FlowDatabase
        from database.models import FlowRow
        db = FlowDatabase(f"sqlite:///{tmp_path / 'tx.db'}")
        await db.create_tables()
        try:
            with pytest.raises(RuntimeError):
                async with db.transaction() as tx:
                    tx.add(FlowRow(id="f1", user_id=USER, name="x", status="active", graph={}))
                    await tx.flush()
                    raise RuntimeError("boom")
            async with db.transaction() as tx:
                assert await tx.get(FlowRow, "f1") is None
        finally:
            await db.dispose()
