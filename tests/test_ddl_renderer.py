from __future__ import annotations

import pytest

from schemaflow.services.change_operations import (
    AddColumn,
    AddConstraint,
    AddIndex,
    AlterColumnDefault,
    AlterColumnNullability,
    AlterEnumValues,
    CreateEnum,
    CreateTable,
    DropTable,
    RenameColumn,
)
from schemaflow.services.ddl_renderer import Dialect, quote_identifier, render, render_unit
from schemaflow.services.migration_errors import SemanticError
from schemaflow.services.schema_differ import diff
from schemaflow.services.schema_model import (
    EMPTY_MODEL,
    ColumnDef,
    ColumnType,
    ConstraintDef,
    ConstraintKind,
    EnumDef,
    IndexDef,
    ScalarType,
)
from schemaflow.services.schema_source import parse

USERS = parse(
    """
    table users {
      id bigint not null generated primary key
      email text not null
    }
    """
)

SHOP = parse(
    """
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
)

WITH_ROLE = parse(
    """
    enum role {
      admin
      member
      guest
    }

    table users {
      id bigint not null primary key
      role enum(role)
    }
    """
)


def test_create_table_on_postgres() -> None:
    (op,) = diff(EMPTY_MODEL, USERS)

    assert render(op) == [
        'CREATE TABLE "users" (\n'
        '    "id" BIGINT NOT NULL GENERATED BY DEFAULT AS IDENTITY,\n'
        '    "email" TEXT NOT NULL,\n'
        '    CONSTRAINT "users_pkey" PRIMARY KEY ("id")\n'
        ")"
    ]


def test_create_table_on_sqlite_leaves_key_generation_to_sqlite() -> None:
    (op,) = diff(EMPTY_MODEL, USERS)

    (statement,) = render(op, "sqlite")

    assert '"id" BIGINT NOT NULL,' in statement
    assert "IDENTITY" not in statement


def test_column_defaults_are_parenthesised() -> None:
    op = AddColumn(
        table="users",
        column=ColumnDef("status", ColumnType(ScalarType.TEXT), nullable=False, default="'active'"),
    )

    assert render(op) == ['ALTER TABLE "users" ADD COLUMN "status" TEXT NOT NULL DEFAULT (\'active\')']


def test_partial_unique_index_uses_derived_name() -> None:
    op = AddIndex(table="users", index=IndexDef(columns=("email",), unique=True, predicate="deleted_at is null"))

    (statement,) = render(op)

    assert statement.startswith('CREATE UNIQUE INDEX "users_email_')
    assert statement.endswith('_uidx" ON "users" ("email") WHERE deleted_at is null')


def test_nullability_default_and_drop() -> None:
    tighten = AlterColumnNullability(table="users", column="email", nullable=False, previously_nullable=True)
    default = AlterColumnDefault(table="users", column="email", default=None, previous_default="''")

    assert render(tighten) == ['ALTER TABLE "users" ALTER COLUMN "email" SET NOT NULL']
    assert render(default) == ['ALTER TABLE "users" ALTER COLUMN "email" DROP DEFAULT']
    assert render(DropTable(table=USERS.table("users"))) == ['DROP TABLE "users"']


def test_rename_column_renders_on_both_dialects() -> None:
    op = RenameColumn(table="users", old_name="email", new_name="email_address")
    expected = ['ALTER TABLE "users" RENAME COLUMN "email" TO "email_address"']

    assert render(op, Dialect.POSTGRESQL) == expected
    assert render(op, Dialect.SQLITE) == expected


def test_sqlite_rejects_in_place_column_changes() -> None:
    op = AlterColumnNullability(table="users", column="email", nullable=False, previously_nullable=True)

    with pytest.raises(SemanticError) as excinfo:
        render(op, Dialect.SQLITE)

    assert "sqlite" in excinfo.value.description


def test_enums_render_nothing_on_sqlite() -> None:
    op = CreateEnum(enum=EnumDef(name="role", values=("admin", "member")))

    assert render(op, Dialect.SQLITE) == []
    assert render(op) == ["CREATE TYPE \"role\" AS ENUM ('admin', 'member')"]


def test_appending_enum_values() -> None:
    op = AlterEnumValues(name="role", old_values=("admin", "member"), new_values=("admin", "member", "guest"))

    assert render(op) == ["ALTER TYPE \"role\" ADD VALUE 'guest'"]


def test_removing_enum_values_rebuilds_type_and_dependent_columns() -> None:
    op = AlterEnumValues(name="role", old_values=("admin", "member", "guest"), new_values=("admin", "member"))

    assert render(op, context=WITH_ROLE) == [
        'ALTER TYPE "role" RENAME TO "role__old"',
        "CREATE TYPE \"role\" AS ENUM ('admin', 'member')",
        'ALTER TABLE "users" ALTER COLUMN "role" TYPE "role" USING "role"::text::"role"',
        'DROP TYPE "role__old"',
    ]
    with pytest.raises(SemanticError):
        render(op)


def test_dialect_aliases() -> None:
    assert Dialect.parse("postgres") is Dialect.POSTGRESQL
    assert Dialect.parse("SQLite") is Dialect.SQLITE
    with pytest.raises(SemanticError):
        Dialect.parse("mysql")


def test_identifiers_are_quoted() -> None:
    assert quote_identifier('we"ird') == '"we""ird"'


def test_create_table_includes_inline_indexes() -> None:
    table = parse(
        """
        table events {
          id integer not null primary key
          kind text
          index (kind)
        }
        """
    ).table("events")

    statements = render(CreateTable(table=table))

    assert statements[1] == 'CREATE INDEX "events_kind_idx" ON "events" ("kind")'


def test_sqlite_folds_constraints_into_tables_created_in_the_same_unit() -> None:
    ops = diff(EMPTY_MODEL, SHOP)
    assert any(isinstance(op, AddConstraint) for op in ops)

    rendered = render_unit(ops, Dialect.SQLITE, context=EMPTY_MODEL)

    assert len(rendered) == len(ops)
    created = {
        op.table.name: statements[0] for op, statements in zip(ops, rendered) if isinstance(op, CreateTable)
    }
    assert 'CONSTRAINT "users_email_key" UNIQUE ("email")' in created["users"]
    assert (
        'CONSTRAINT "orders_user_id_fkey" FOREIGN KEY ("user_id") REFERENCES "users" ("id") ON DELETE NO ACTION'
        in created["orders"]
    )
    assert all(statements == [] for op, statements in zip(ops, rendered) if isinstance(op, AddConstraint))
    assert render_unit(ops, Dialect.SQLITE, start=len(ops) - 1) == [[]]


def test_postgres_keeps_constraints_as_separate_statements() -> None:
    ops = diff(EMPTY_MODEL, SHOP)

    assert render_unit(ops, context=EMPTY_MODEL) == [render(op) for op in ops]


def test_sqlite_still_rejects_constraints_on_existing_tables() -> None:
    op = AddConstraint(table="users", constraint=ConstraintDef(ConstraintKind.UNIQUE, ("email",)))

    with pytest.raises(SemanticError):
        render_unit([op], Dialect.SQLITE)
