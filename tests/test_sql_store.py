import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from conftest import AUTH, check_board, run
from prodboard.config import Settings
from prodboard.db import SqlDocumentStore, decode, encode
from prodboard.engine import OrderingEngine
from prodboard.errors import Internal
from prodboard.main import create_app
from prodboard.store import SERVER_TIMESTAMP, TransactionConflict, Write, array_union


@pytest.fixture
def sql_store(tmp_path):
    store = SqlDocumentStore(f"sqlite:///{tmp_path / 'board.db'}", backoff_base=0.0)
    store.init_db()
    yield store
    store.dispose()


def test_encode_roundtrips_timestamps(sql_store):
    now = sql_store.server_now()
    assert decode(encode({"at": now, "tags": ["a"]})) == {"at": now, "tags": ["a"]}


def test_writes_and_versions(sql_store):
    async def scenario():
        await sql_store.set("cols", "c", {"cardOrder": [], "createdAt": SERVER_TIMESTAMP})
        await sql_store.update("cols", "c", {"cardOrder": array_union("x")})
        return await sql_store.get("cols", "c")

    snapshot = run(scenario())
    assert snapshot.version == 2
    assert snapshot.data["cardOrder"] == ["x"]
    assert snapshot.data["createdAt"] is not None


def test_stale_read_conflicts(sql_store):
    async def scenario():
        await sql_store.set("things", "a", {"n": 1})
        stale = await sql_store.get("things", "a")
        await sql_store.update("things", "a", {"n": 2})
        await sql_store.commit([Write("update", "things", "a", {"n": 3})], {("things", "a"): stale.version})

    with pytest.raises(TransactionConflict):
        run(scenario())
    assert run(sql_store.get("things", "a")).data == {"n": 2}


def test_deleted_documents_drop_out_of_queries(sql_store):
    async def scenario():
        await sql_store.set("cards", "a", {"col": "1"})
        await sql_store.set("cards", "b", {"col": "1"})
        await sql_store.delete("cards", "a")
        return await sql_store.query("cards", where=("col", "1")), await sql_store.get("cards", "a")

    remaining, deleted = run(scenario())
    assert [s.id for s in remaining] == ["b"]
    assert not deleted.exists
    assert deleted.version == 2


def test_engine_on_sql_store(sql_store):
    engine = OrderingEngine(sql_store)

    async def scenario():
        todo = await engine.create_column("To Do")
        cards = [await engine.create_card(todo.id, t) for t in ("A", "B", "C")]
        doing = await engine.create_column("In Progress")
        await engine.move_card(cards[2].id, doing.id, 0)
        await engine.delete_card(cards[0].id)
        return await engine.list_columns()

    columns = run(scenario())
    assert [c.title for c in columns] == ["To Do", "In Progress"]
    assert [(c.title, c.order_in_column) for c in columns[0].cards] == [("B", 0)]
    assert [(c.title, c.order_in_column) for c in columns[1].cards] == [("C", 0)]
    run(check_board(sql_store))


def test_api_on_sql_backend(tmp_path):
    settings = Settings(store_backend="sql", database_url=f"sqlite:///{tmp_path / 'api.db'}")
    client = TestClient(create_app(settings))
    response = client.post("/production-board/columns", json={"title": "To Do"}, headers=AUTH)
    assert response.status_code == 201
    listing = client.get("/production-board/columns", headers=AUTH).json()
    assert [c["title"] for c in listing] == ["To Do"]
    client.app.state.engine.store.dispose()


def test_query_filters_in_sql(sql_store):
    statements = []

    def capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    async def scenario():
        await sql_store.set("cards", "a", {"col": "1", "rank": 0, "done": False})
        await sql_store.set("cards", "b", {"col": "2", "rank": 1, "done": True})
        await sql_store.set("cards", "c", {"col": "1", "rank": 2, "done": True})
        event.listen(sql_store.engine, "before_cursor_execute", capture)
        try:
            return (
                await sql_store.query("cards", where=("col", "1"), order_by="rank"),
                await sql_store.query("cards", where=("rank", 1)),
                await sql_store.query("cards", where=("done", True), order_by="rank"),
            )
        finally:
            event.remove(sql_store.engine, "before_cursor_execute", capture)

    by_col, by_rank, by_flag = run(scenario())
    assert [s.id for s in by_col] == ["a", "c"]
    assert [s.id for s in by_rank] == ["b"]
    assert [s.id for s in by_flag] == ["b", "c"]
    assert len(statements) == 3
    assert all("JSON_EXTRACT" in statement.upper() for statement in statements)


def test_store_failure_raises_internal(sql_store, monkeypatch):
    def broken(collection, doc_id):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(sql_store, "_get_sync", broken)
    with pytest.raises(Internal, match="Unexpected document store failure"):
        run(OrderingEngine(sql_store).get_card("any"))


def test_store_failure_maps_to_500(sql_store, monkeypatch, caplog):
    def broken(collection, doc_id):
        raise SQLAlchemyError("boom")

    monkeypatch.setattr(sql_store, "_get_sync", broken)
    client = TestClient(create_app(Settings(), store=sql_store))
    response = client.get("/production-board/cards/any", headers=AUTH)
    assert response.status_code == 500
    assert response.json() == {"error": "Unexpected document store failure"}
    assert "Document store failure" in caplog.text
