from __future__ import annotations

from contextlib import contextmanager

import pytest

from schemaflow.cli import run

USERS_V0 = """
table users {
  id bigint not null primary key
  email text unique
}
"""

USERS_V1 = """
table users {
  id bigint not null primary key
  email text not null unique
}
"""


@pytest.fixture()
def factory(migration_engine):
    @contextmanager
    def _factory(settings):
        yield migration_engine

    return _factory


@pytest.fixture()
def schema_file(tmp_path):
    def _write(source: str, name: str = "schema.sfl"):
        path = tmp_path / name
        path.write_text(source, encoding="utf-8")
        return str(path)

    return _write


def test_plan_prints_units(factory, schema_file, capsys) -> None:
    code = run(["plan", "--schema", schema_file(USERS_V0)], engine_factory=factory)

    assert code == 0
    output = capsys.readouterr().out
    assert "0001_migration" in output
    assert "[safe] create table users (id, email)" in output


def test_apply_then_plan_has_no_changes(factory, schema_file, capsys) -> None:
    path = schema_file(USERS_V0)

    assert run(["apply", "--schema", path], engine_factory=factory) == 0
    assert "applied 0001_migration" in capsys.readouterr().out

    assert run(["plan", "--schema", path], engine_factory=factory) == 0
    assert capsys.readouterr().out.strip() == "No changes."


def test_diff_against_a_base_file(factory, schema_file, capsys) -> None:
    code = run(
        ["diff", "--schema", schema_file(USERS_V1, "v1.sfl"), "--base", schema_file(USERS_V0, "v0.sfl")],
        engine_factory=factory,
    )

    assert code == 0
    assert capsys.readouterr().out.strip() == "alter column users.email set not null"


def test_invalid_schema_exits_with_invalid_schema_code(factory, schema_file, capsys) -> None:
    code = run(["plan", "--schema", schema_file("table users {\n  id varchar\n}\n")], engine_factory=factory)

    assert code == 6
    assert "Syntax error at line 2" in capsys.readouterr().err


def test_missing_schema_argument(factory) -> None:
    assert run(["plan"], engine_factory=factory) == 6


def test_unreadable_schema_file_fails(factory, tmp_path, capsys) -> None:
    code = run(["plan", "--schema", str(tmp_path / "missing.sfl")], engine_factory=factory)

    assert code == 1
    assert "Unable to read schema source" in capsys.readouterr().err


def test_backfill_commands(factory, schema_file, fake_connection, capsys) -> None:
    run(["apply", "--schema", schema_file(USERS_V0)], engine_factory=factory)
    fake_connection.row_counts["users"] = 10
    v1 = schema_file(USERS_V1, "v1.sfl")

    assert run(["apply", "--phased", "--schema", v1], engine_factory=factory) == 5
    assert "0002_migration_backfill_users_email is waiting for a backfill" in capsys.readouterr().out
    assert run(["status"], engine_factory=factory) == 5
    capsys.readouterr()

    code = run(["acknowledge-backfill", "0002_migration_backfill_users_email"], engine_factory=factory)

    assert code == 0
    output = capsys.readouterr().out
    assert "0 rows still violate the requirement" in output
    assert "0002_migration_backfill_users_email: applied" in output
    assert run(["apply", "--phased", "--schema", v1], engine_factory=factory) == 0
    assert "applied 0003_migration_contract" in capsys.readouterr().out


def test_rejected_backfill_evidence_fails(factory, schema_file, fake_connection, capsys) -> None:
    run(["apply", "--schema", schema_file(USERS_V0)], engine_factory=factory)
    fake_connection.row_counts["users"] = 10
    run(["apply", "--phased", "--schema", schema_file(USERS_V1, "v1.sfl")], engine_factory=factory)

    code = run(
        ["acknowledge-backfill", "0002_migration_backfill_users_email", "--remaining", "4"],
        engine_factory=factory,
    )

    assert code == 1


def test_blocked_and_resolve(factory, schema_file, fake_connection, capsys) -> None:
    run(["apply", "--schema", schema_file(USERS_V0)], engine_factory=factory)
    fake_connection.fail_on = '"email"'
    fake_connection.row_counts["users"] = 0
    v1 = schema_file(USERS_V1, "v1.sfl")

    assert run(["apply", "--schema", v1], engine_factory=factory) == 1
    fake_connection.fail_on = None
    assert run(["plan", "--schema", v1], engine_factory=factory) == 2
    assert "Blocked by unit 0002_migration" in capsys.readouterr().err
    assert run(["status"], engine_factory=factory) == 2

    assert run(["resolve", "0002_migration", "--note", "retrying"], engine_factory=factory) == 0
    assert run(["apply", "--schema", v1], engine_factory=factory) == 0


def test_data_loss_needs_flag(factory, schema_file) -> None:
    with_legacy = USERS_V0 + "\ntable legacy_logs {\n  id bigint not null primary key\n}\n"
    run(["apply", "--schema", schema_file(with_legacy)], engine_factory=factory)
    path = schema_file(USERS_V0, "v0.sfl")

    assert run(["apply", "--schema", path], engine_factory=factory) == 1
    assert run(["apply", "--schema", path, "--confirm-data-loss"], engine_factory=factory) == 0


def test_export_prints_recorded_schema(factory, schema_file, capsys) -> None:
    run(["apply", "--schema", schema_file(USERS_V0)], engine_factory=factory)
    capsys.readouterr()

    assert run(["export"], engine_factory=factory) == 0
    assert capsys.readouterr().out == (
        "table users {\n"
        "  id bigint not null\n"
        "  email text\n"
        "  primary key (id)\n"
        "  unique (email)\n"
        "}\n"
    )


def test_export_live_needs_a_sqlalchemy_target(factory) -> None:
    assert run(["export", "--live"], engine_factory=factory) == 6


def test_init_creates_history_tables(capsys) -> None:
    assert run(["--history-url", "sqlite://", "init"]) == 0
    assert "History tables are ready." in capsys.readouterr().out
