from __future__ import annotations

from schemaflow.services.change_operations import (
    AddColumn,
    AddConstraint,
    AddIndex,
    AlterColumnNullability,
    AlterColumnType,
    AlterEnumValues,
    DropColumn,
    DropTable,
    RenameTable,
)
from schemaflow.services.risk_classifier import RiskClassifier, RiskTier, classify
from schemaflow.services.schema_model import (
    ColumnDef,
    ColumnType,
    ConstraintDef,
    ConstraintKind,
    IndexDef,
    ScalarType,
)
from schemaflow.services.schema_source import parse

CONTEXT = parse(
    """
    table orgs {
      id bigint not null primary key
    }

    table users {
      id bigint not null primary key
      email text
      org_id bigint
    }
    """
)

TEXT = ColumnType(ScalarType.TEXT)


def test_drops_lose_data() -> None:
    assert classify(DropTable(table=CONTEXT.table("orgs")), CONTEXT) is RiskTier.DATA_LOSS
    assert classify(DropColumn(table="users", column=ColumnDef("email", TEXT)), CONTEXT) is RiskTier.DATA_LOSS


def test_adding_columns() -> None:
    nullable = AddColumn(table="users", column=ColumnDef("phone", TEXT))
    defaulted = AddColumn(table="users", column=ColumnDef("status", TEXT, nullable=False, default="'active'"))
    required = AddColumn(table="users", column=ColumnDef("nickname", TEXT, nullable=False))

    assert classify(nullable, CONTEXT) is RiskTier.SAFE
    assert classify(defaulted, CONTEXT) is RiskTier.SAFE
    # Unknown table size is treated as non-empty.
    assert classify(required, CONTEXT) is RiskTier.REQUIRES_BACKFILL
    assert classify(required, CONTEXT, row_estimates={"users": 0}) is RiskTier.SAFE
    assert classify(required, CONTEXT, row_estimates={"users": 12}) is RiskTier.REQUIRES_BACKFILL


def test_adding_required_column_to_new_table_is_safe() -> None:
    op = AddColumn(table="accounts", column=ColumnDef("nickname", TEXT, nullable=False))

    assert classify(op, CONTEXT) is RiskTier.SAFE


def test_type_changes_depend_on_widening() -> None:
    widening = AlterColumnType(
        table="users",
        column="org_id",
        from_type=ColumnType(ScalarType.INTEGER),
        to_type=ColumnType(ScalarType.BIGINT),
    )
    narrowing = AlterColumnType(
        table="users",
        column="email",
        from_type=TEXT,
        to_type=ColumnType(ScalarType.INTEGER),
    )

    assert classify(widening, CONTEXT) is RiskTier.SAFE
    assert classify(narrowing, CONTEXT) is RiskTier.DATA_LOSS


def test_tightening_nullability_requires_backfill_on_populated_tables() -> None:
    tighten = AlterColumnNullability(table="users", column="email", nullable=False, previously_nullable=True)
    loosen = AlterColumnNullability(table="users", column="email", nullable=True, previously_nullable=False)

    assert classify(tighten, CONTEXT, row_estimates={"users": 3}) is RiskTier.REQUIRES_BACKFILL
    assert classify(tighten, CONTEXT, row_estimates={"users": 0}) is RiskTier.SAFE
    assert classify(loosen, CONTEXT, row_estimates={"users": 3}) is RiskTier.SAFE


def test_index_and_unique_builds_lock_large_tables() -> None:
    index = AddIndex(table="users", index=IndexDef(columns=("email",)))
    unique = AddConstraint(table="users", constraint=ConstraintDef(ConstraintKind.UNIQUE, ("email",)))
    foreign_key = AddConstraint(
        table="users",
        constraint=ConstraintDef(
            ConstraintKind.FOREIGN_KEY,
            ("org_id",),
            references_table="orgs",
            references_columns=("id",),
        ),
    )
    large = {"users": 5_000_000}

    assert classify(index, CONTEXT, row_estimates=large) is RiskTier.LOCKING
    assert classify(unique, CONTEXT, row_estimates=large) is RiskTier.LOCKING
    assert classify(foreign_key, CONTEXT, row_estimates=large) is RiskTier.SAFE
    assert classify(index, CONTEXT, row_estimates={"users": 10}) is RiskTier.SAFE
    assert classify(index, CONTEXT, row_estimates={"users": 10}, large_table_threshold=10) is RiskTier.LOCKING


def test_enum_value_removal_loses_data() -> None:
    removal = AlterEnumValues(name="role", old_values=("admin", "member"), new_values=("admin",))
    addition = AlterEnumValues(name="role", old_values=("admin",), new_values=("admin", "member"))

    assert classify(removal, CONTEXT) is RiskTier.DATA_LOSS
    assert classify(addition, CONTEXT) is RiskTier.SAFE


def test_renamed_tables_are_estimated_under_their_old_name() -> None:
    estimates = {"users": 5_000_000}
    classifier = RiskClassifier(row_count_estimator=estimates.get)
    ops = (
        RenameTable(old_name="users", new_name="members"),
        AddIndex(table="members", index=IndexDef(columns=("email",))),
    )

    classified = classifier.classify_all(ops, CONTEXT)

    assert [item.tier for item in classified] == [RiskTier.SAFE, RiskTier.LOCKING]
    assert classified[1].operation.table == "members"
