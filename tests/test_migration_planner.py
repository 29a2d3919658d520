from __future__ import annotations

import pytest

from schemaflow.services.change_operations import AddColumn, AlterColumnNullability, operations_checksum
from schemaflow.services.migration_errors import SemanticError
from schemaflow.services.migration_planner import (
    MigrationPlanner,
    MigrationUnit,
    Phase,
    plan,
    sanitize_label,
)
from schemaflow.services.risk_classifier import RiskClassifier, RiskTier
from schemaflow.services.schema_differ import diff
from schemaflow.services.schema_source import parse

BASE = parse(
    """
    table users {
      id bigint not null primary key
      email text
    }
    """
)

WITH_NICKNAME = parse(
    """
    table users {
      id bigint not null primary key
      email text
      nickname text not null
      phone text
    }
    """
)


def _planner(rows: int = 5) -> MigrationPlanner:
    estimates = {"users": rows}
    return MigrationPlanner(RiskClassifier(row_count_estimator=estimates.get))


def test_unphased_plan_is_a_single_unit() -> None:
    ops = diff(BASE, WITH_NICKNAME)

    (unit,) = _planner().plan(ops, context=BASE, start_sequence=4, label="Add Nickname")

    assert unit.identifier == "0004_add_nickname"
    assert unit.phase is None
    assert unit.operations == ops
    assert unit.tiers == (RiskTier.REQUIRES_BACKFILL, RiskTier.SAFE)
    assert unit.checksum == operations_checksum(ops)


def test_phased_plan_splits_expand_backfill_contract() -> None:
    ops = diff(BASE, WITH_NICKNAME)

    expand, marker, contract = _planner().plan(ops, context=BASE, phased=True)

    assert expand.identifier == "0001_migration_expand"
    assert expand.phase is Phase.EXPAND
    assert [op.column.name for op in expand.operations] == ["nickname"]
    assert expand.operations[0].column.nullable is True
    assert expand.tiers == (RiskTier.SAFE,)

    assert marker.identifier == "0002_migration_backfill_users_nickname"
    assert marker.is_backfill_marker
    assert marker.operations == ()
    assert marker.prerequisite is None
    assert marker.backfill.verification_query == 'SELECT COUNT(*) FROM "users" WHERE "nickname" IS NULL'

    assert contract.identifier == "0003_migration_contract"
    assert contract.phase is Phase.CONTRACT
    assert contract.prerequisite == marker.identifier
    assert contract.operations[0] == AlterColumnNullability(
        table="users", column="nickname", nullable=False, previously_nullable=True
    )
    assert contract.tiers == (RiskTier.REQUIRES_BACKFILL, RiskTier.SAFE)
    assert isinstance(contract.operations[1], AddColumn)


def test_phased_plan_without_backfill_is_one_unit() -> None:
    ops = diff(BASE, WITH_NICKNAME)

    (unit,) = _planner(rows=0).plan(ops, context=BASE, phased=True)

    assert unit.identifier == "0001_migration_apply"
    assert unit.phase is None
    assert unit.prerequisite is None


def test_satisfied_backfill_is_not_requested_again() -> None:
    ops = diff(BASE, WITH_NICKNAME)
    first = _planner().plan(ops, context=BASE, phased=True)
    marker = first[1]

    units = _planner().plan(
        ops,
        context=BASE,
        phased=True,
        satisfied_backfills={marker.checksum: "0007_done"},
    )

    assert [unit.identifier for unit in units] == ["0001_migration_expand", "0002_migration_contract"]
    assert units[1].prerequisite == "0007_done"


def test_awaiting_backfill_marker_is_reused() -> None:
    ops = diff(BASE, WITH_NICKNAME)
    marker = _planner().plan(ops, context=BASE, phased=True)[1]

    units = _planner().plan(
        ops,
        context=BASE,
        phased=True,
        start_sequence=3,
        awaiting_backfills={marker.checksum: marker},
    )

    assert [unit.identifier for unit in units] == [
        "0003_migration_expand",
        "0002_migration_backfill_users_nickname",
        "0004_migration_contract",
    ]
    assert units[2].prerequisite == marker.identifier


def test_empty_diff_plans_nothing() -> None:
    assert plan((), context=BASE) == ()


def test_sequences_start_at_one() -> None:
    with pytest.raises(SemanticError):
        plan(diff(BASE, WITH_NICKNAME), context=BASE, start_sequence=0)


def test_units_need_a_tier_per_operation() -> None:
    ops = diff(BASE, WITH_NICKNAME)

    with pytest.raises(SemanticError):
        MigrationUnit(sequence=1, label="broken", operations=ops, tiers=(RiskTier.SAFE,))


def test_unit_payload_restores_the_same_unit() -> None:
    ops = diff(BASE, WITH_NICKNAME)
    for unit in _planner().plan(ops, context=BASE, phased=True):
        restored = MigrationUnit.from_payload(
            sequence=unit.sequence,
            label=unit.label,
            phase=unit.phase.value if unit.phase else None,
            checksum=unit.checksum,
            payload=unit.to_payload(),
        )
        assert restored == unit
        assert restored.compute_checksum() == unit.checksum


def test_sanitize_label() -> None:
    assert sanitize_label("Add Phone!") == "add_phone"
    assert sanitize_label("  ") == "migration"
    assert sanitize_label(None, default="schema") == "schema"
