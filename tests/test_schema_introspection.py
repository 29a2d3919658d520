from __future__ import annotations

from contextlib import contextmanager

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from schemaflow.cli import run
from schemaflow.database import create_engine_with_fallback
from schemaflow.services.database_connection import SqlAlchemyDatabaseConnection
from schemaflow.services.migration_engine import MigrationEngine, ResultCode
from schemaflow.services.migration_errors import SchemaDrift, StatementExecutionError
from schemaflow.services.schema_introspection import introspect, normalize_default
from schemaflow.services.schema_model import ConstraintKind, ScalarType
from schemaflow.services.schema_source import parse

MEMBERS = parse(
    """
    table members {
      id integer not null primary key
      name text not null
      index (name)
    }
    """
)

RENAMED = parse(
    """
    table members {
      id integer not null primary key
      full_name text not null was name
      index (full_name)
    }
    """
)

SHOP_SOURCE = """
table users {
  id integer not null primary key
  email text not null unique
}

table orders {
  id integer not null primary key
  user_id integer not null
  foreign key (user_id) references users (id)
}
"""

MEMBERS_SOURCE = """
table members {
  id integer not null primary key
  name text not null
  index (name)
}
"""

WITH_NICKNAME = parse(
    """
    table members {
      id integer not null primary key
      name text not null
      nickname text
      index (name)
    }
    """
)


@pytest.fixture()
def target_engine():
    engine = create_engine_with_fallback("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture()
def sqlite_engine(history, settings, target_engine) -> MigrationEngine:
    connection = SqlAlchemyDatabaseConnection(target_engine, target_name="test")
    return MigrationEngine(history, connection, settings=settings)


@pytest.fixture()
def migration_engine(sqlite_engine) -> MigrationEngine:
    return sqlite_engine


def test_applied_schema_matches_snapshot(sqlite_engine) -> None:
    report = sqlite_engine.apply(sqlite_engine.plan(MEMBERS))

    assert report.applied == ("0001_migration",)
    snapshot = sqlite_engine.snapshot()
    members = snapshot.table("members")
    assert members.column_names == ("id", "name")
    assert members.column("id").type.scalar is ScalarType.INTEGER
    assert members.column("name").nullable is False
    assert members.primary_key.columns == ("id",)
    assert [index.columns for index in members.indexes] == [("name",)]
    assert sqlite_engine.history.drift_report(snapshot) is None
    assert sqlite_engine.status(live_snapshot=snapshot).result_code is ResultCode.SUCCESS


def test_ledger_tables_are_not_part_of_the_snapshot(target_engine) -> None:
    with target_engine.begin() as connection:
        connection.execute(text('CREATE TABLE "migration_locks" ("target" TEXT)'))

    assert introspect(target_engine).table_names == ()


def test_renamed_column_keeps_matching_history(sqlite_engine) -> None:
    sqlite_engine.apply(sqlite_engine.plan(MEMBERS))

    plan = sqlite_engine.plan(RENAMED)
    sqlite_engine.apply(plan)

    assert [item.operation.kind for item in plan.operations][0] == "rename_column"
    snapshot = sqlite_engine.snapshot()
    assert snapshot.table("members").column_names == ("id", "full_name")
    assert sqlite_engine.history.drift_report(snapshot) is None


def test_out_of_band_change_is_drift(sqlite_engine, target_engine) -> None:
    sqlite_engine.apply(sqlite_engine.plan(MEMBERS))
    with target_engine.begin() as connection:
        connection.execute(text('ALTER TABLE "members" ADD COLUMN "nickname" TEXT'))

    snapshot = sqlite_engine.snapshot()

    with pytest.raises(SchemaDrift) as excinfo:
        sqlite_engine.plan(WITH_NICKNAME, live_snapshot=snapshot)
    assert excinfo.value.differences == ("add column members.nickname text",)

    assert sqlite_engine.acknowledge_drift(snapshot, "added by support") is not None
    plan = sqlite_engine.plan(WITH_NICKNAME, live_snapshot=sqlite_engine.snapshot())
    assert [unit.identifier for unit in plan.units] == ["0002_migration"]


def test_connection_estimates_and_errors(target_engine) -> None:
    connection = SqlAlchemyDatabaseConnection(target_engine, target_name="test")
    connection.execute('CREATE TABLE "events" ("id" INTEGER NOT NULL)')

    assert connection.supports_transactional_ddl is False
    assert connection.estimate_row_count("events") == 0
    assert connection.estimate_row_count("missing") is None
    assert connection.query_scalar('SELECT COUNT(*) FROM "events"') == 0
    with pytest.raises(StatementExecutionError) as excinfo:
        connection.execute('SELECT * FROM "missing"')
    assert excinfo.value.statement == 'SELECT * FROM "missing"'


def test_transactions_roll_back(target_engine) -> None:
    connection = SqlAlchemyDatabaseConnection(target_engine, target_name="test")
    connection.execute('CREATE TABLE "events" ("id" INTEGER NOT NULL)')

    connection.begin_transaction()
    connection.execute('INSERT INTO "events" ("id") VALUES (1)')
    connection.rollback()

    assert not connection.in_transaction
    assert connection.query_scalar('SELECT COUNT(*) FROM "events"') == 0


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("('active'::text)", "'active'"),
        ("(now())", "now()"),
        ("0", "0"),
        (None, None),
    ],
)
def test_normalize_default(raw, expected) -> None:
    assert normalize_default(raw) == expected


def test_new_tables_keep_unique_and_foreign_keys_on_sqlite(sqlite_engine, target_engine) -> None:
    report = sqlite_engine.apply(sqlite_engine.plan(parse(SHOP_SOURCE)))

    assert report.applied == ("0001_migration",)
    snapshot = sqlite_engine.snapshot()
    users_kinds = [constraint.kind for constraint in snapshot.table("users").constraints]
    assert ConstraintKind.UNIQUE in users_kinds
    (foreign_key,) = [
        constraint
        for constraint in snapshot.table("orders").constraints
        if constraint.kind is ConstraintKind.FOREIGN_KEY
    ]
    assert foreign_key.references_table == "users"
    assert foreign_key.references_columns == ("id",)
    assert sqlite_engine.history.drift_report(snapshot) is None

    with target_engine.begin() as connection:
        connection.execute(text("INSERT INTO \"users\" (\"id\", \"email\") VALUES (1, 'a@example.com')"))
    with pytest.raises(IntegrityError):
        with target_engine.begin() as connection:
            connection.execute(text("INSERT INTO \"users\" (\"id\", \"email\") VALUES (2, 'a@example.com')"))


def test_plan_checks_drift_by_default(client, sqlite_engine, target_engine) -> None:
    sqlite_engine.apply(sqlite_engine.plan(MEMBERS))
    with target_engine.begin() as connection:
        connection.execute(text('ALTER TABLE "members" ADD COLUMN "nickname" TEXT'))

    drifted = client.post("/migrations/plan", json={"source": MEMBERS_SOURCE})

    assert drifted.status_code == 409
    detail = drifted.json()["detail"]
    assert detail["error"] == "drift"
    assert detail["result_code"] == 3
    assert detail["differences"] == ["add column members.nickname text"]

    refused = client.post("/migrations/apply", json={"source": MEMBERS_SOURCE})

    assert refused.status_code == 409
    assert client.get("/migrations/status").json()["result_code"] == 3

    skipped = client.post("/migrations/plan", json={"source": MEMBERS_SOURCE, "skip_drift_check": True})

    assert skipped.status_code == 200
    assert skipped.json()["units"] == []
    assert client.get("/migrations/status", params={"skip_drift_check": True}).json()["result_code"] == 0


def test_cli_checks_drift_by_default(sqlite_engine, target_engine, tmp_path) -> None:
    @contextmanager
    def factory(settings):
        yield sqlite_engine

    path = tmp_path / "members.sfl"
    path.write_text(MEMBERS_SOURCE, encoding="utf-8")
    assert run(["apply", "--schema", str(path)], engine_factory=factory) == 0
    with target_engine.begin() as connection:
        connection.execute(text('ALTER TABLE "members" ADD COLUMN "nickname" TEXT'))

    assert run(["plan", "--schema", str(path)], engine_factory=factory) == 3
    assert run(["apply", "--schema", str(path)], engine_factory=factory) == 3
    assert run(["status"], engine_factory=factory) == 3
    assert run(["plan", "--schema", str(path), "--skip-drift-check"], engine_factory=factory) == 0
    assert run(["status", "--skip-drift-check"], engine_factory=factory) == 0
