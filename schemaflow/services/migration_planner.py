"""Group classified change operations into ordered migration units."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Sequence

from schemaflow.services.change_operations import (
    AddColumn,
    AlterColumnNullability,
    ChangeOperation,
    canonical_json,
    operation_from_payload,
    operations_checksum,
)
from schemaflow.services.migration_errors import SemanticError
from schemaflow.services.risk_classifier import ClassifiedOperation, RiskClassifier, RiskTier
from schemaflow.services.schema_model import SchemaModel

_LABEL_PATTERN = re.compile(r"[^A-Za-z0-9]+")


class Phase(str, Enum):
    EXPAND = "expand"
    BACKFILL = "backfill"
    CONTRACT = "contract"


def sanitize_label(value: str | None, *, default: str = "migration") -> str:
    if not value:
        return default
    sanitized = _LABEL_PATTERN.sub("_", value.strip()).strip("_").lower()
    return sanitized or default


@dataclass(frozen=True)
class BackfillRequirement:
    """Rows matching ``predicate`` still violate the constraint the contract unit enforces."""

    table: str
    column: str
    predicate: str
    expected_violations: int = 0
    expected_checksum: Optional[str] = None

    @property
    def verification_query(self) -> str:
        return f'SELECT COUNT(*) FROM "{self.table}" WHERE {self.predicate}'

    def to_payload(self) -> dict:
        payload = {
            "table": self.table,
            "column": self.column,
            "predicate": self.predicate,
            "expected_violations": self.expected_violations,
        }
        if self.expected_checksum:
            payload["expected_checksum"] = self.expected_checksum
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "BackfillRequirement":
        return cls(
            table=payload["table"],
            column=payload["column"],
            predicate=payload["predicate"],
            expected_violations=int(payload.get("expected_violations", 0)),
            expected_checksum=payload.get("expected_checksum"),
        )


@dataclass(frozen=True)
class MigrationUnit:
    sequence: int
    label: str
    operations: tuple[ChangeOperation, ...] = ()
    tiers: tuple[RiskTier, ...] = ()
    phase: Optional[Phase] = None
    backfill: Optional[BackfillRequirement] = None
    prerequisite: Optional[str] = None
    checksum: str = field(default="")

    def __post_init__(self) -> None:
        object.__setattr__(self, "operations", tuple(self.operations))
        object.__setattr__(self, "tiers", tuple(self.tiers))
        if len(self.tiers) != len(self.operations):
            raise SemanticError("Every operation in a migration unit needs a risk tier")
        if not self.checksum:
            object.__setattr__(self, "checksum", self.compute_checksum())

    @property
    def identifier(self) -> str:
        return f"{self.sequence:04d}_{self.label}"

    @property
    def is_backfill_marker(self) -> bool:
        return self.phase is Phase.BACKFILL

    @property
    def has_data_loss(self) -> bool:
        return RiskTier.DATA_LOSS in self.tiers

    @property
    def tables(self) -> tuple[str, ...]:
        names: list[str] = []
        for operation in self.operations:
            for name in operation.tables:
                if name not in names:
                    names.append(name)
        if self.backfill and self.backfill.table not in names:
            names.append(self.backfill.table)
        return tuple(names)

    def compute_checksum(self) -> str:
        if self.backfill is not None:
            digest = hashlib.sha256(canonical_json({"backfill": self.backfill.to_payload()}).encode("utf-8"))
            return digest.hexdigest()
        return operations_checksum(self.operations)

    def operation_payloads(self) -> list[dict]:
        return [operation.to_payload() for operation in self.operations]

    def to_payload(self) -> dict:
        """Serialisable form stored alongside history records."""

        payload: dict = {
            "operations": self.operation_payloads(),
            "tiers": [tier.value for tier in self.tiers],
        }
        if self.backfill is not None:
            payload["backfill"] = self.backfill.to_payload()
        if self.prerequisite:
            payload["prerequisite"] = self.prerequisite
        return payload

    @classmethod
    def from_payload(
        cls,
        *,
        sequence: int,
        label: str,
        phase: Optional[str],
        checksum: str,
        payload: dict,
    ) -> "MigrationUnit":
        backfill = payload.get("backfill")
        return cls(
            sequence=sequence,
            label=label,
            operations=tuple(operation_from_payload(item) for item in payload.get("operations", ())),
            tiers=tuple(RiskTier(item) for item in payload.get("tiers", ())),
            phase=Phase(phase) if phase else None,
            backfill=BackfillRequirement.from_payload(backfill) if backfill else None,
            prerequisite=payload.get("prerequisite"),
            checksum=checksum,
        )


def _split_for_backfill(op: ChangeOperation) -> tuple[Optional[ChangeOperation], ChangeOperation]:
    """Return the (expand, contract) pair for an operation that needs a backfill."""

    if isinstance(op, AddColumn):
        expand = AddColumn(table=op.table, column=replace(op.column, nullable=True))
        contract = AlterColumnNullability(
            table=op.table,
            column=op.column.name,
            nullable=False,
            previously_nullable=True,
        )
        return expand, contract
    if isinstance(op, AlterColumnNullability):
        return None, op
    raise SemanticError(f"{op.kind} cannot be split into expand/contract phases")


def _requirement_for(op: ChangeOperation) -> BackfillRequirement:
    column = op.column.name if isinstance(op, AddColumn) else op.column
    return BackfillRequirement(table=op.table, column=column, predicate=f'"{column}" IS NULL')


class MigrationPlanner:
    """Splits a classified diff into units.

    ``satisfied_backfills`` maps marker checksums to the identifier of an already
    acknowledged marker, and ``awaiting_backfills`` maps checksums to markers still
    waiting for evidence. Re-planning against the ledger therefore reuses the marker
    instead of asking for the same backfill twice.
    """

    def __init__(self, classifier: Optional[RiskClassifier] = None) -> None:
        self._classifier = classifier or RiskClassifier()

    def classify(self, ops: Iterable[ChangeOperation], context: SchemaModel) -> tuple[ClassifiedOperation, ...]:
        return self._classifier.classify_all(tuple(ops), context)

    def plan(
        self,
        ops: Sequence[ChangeOperation],
        *,
        context: SchemaModel,
        phased: bool = False,
        start_sequence: int = 1,
        label: str = "migration",
        satisfied_backfills: Optional[Mapping[str, str]] = None,
        awaiting_backfills: Optional[Mapping[str, MigrationUnit]] = None,
    ) -> tuple[MigrationUnit, ...]:
        return self.plan_classified(
            self.classify(ops, context),
            phased=phased,
            start_sequence=start_sequence,
            label=label,
            satisfied_backfills=satisfied_backfills,
            awaiting_backfills=awaiting_backfills,
        )

    def plan_classified(
        self,
        classified: Sequence[ClassifiedOperation],
        *,
        phased: bool = False,
        start_sequence: int = 1,
        label: str = "migration",
        satisfied_backfills: Optional[Mapping[str, str]] = None,
        awaiting_backfills: Optional[Mapping[str, MigrationUnit]] = None,
    ) -> tuple[MigrationUnit, ...]:
        if start_sequence < 1:
            raise SemanticError("Migration sequences start at 1")
        label = sanitize_label(label)
        if not classified:
            return ()

        if not phased:
            return (
                MigrationUnit(
                    sequence=start_sequence,
                    label=label,
                    operations=tuple(item.operation for item in classified),
                    tiers=tuple(item.tier for item in classified),
                ),
            )

        satisfied = dict(satisfied_backfills or {})
        awaiting = dict(awaiting_backfills or {})
        units: List[MigrationUnit] = []
        pending_ops: List[ChangeOperation] = []
        pending_tiers: List[RiskTier] = []
        prerequisite: Optional[str] = None
        sequence = start_sequence

        def flush(phase: Optional[Phase], suffix: str) -> None:
            nonlocal sequence, prerequisite
            if not pending_ops:
                return
            units.append(
                MigrationUnit(
                    sequence=sequence,
                    label=f"{label}_{suffix}",
                    operations=tuple(pending_ops),
                    tiers=tuple(pending_tiers),
                    phase=phase,
                    prerequisite=prerequisite,
                )
            )
            sequence += 1
            prerequisite = None
            pending_ops.clear()
            pending_tiers.clear()

        after_backfill = False
        for item in classified:
            if item.tier is not RiskTier.REQUIRES_BACKFILL:
                pending_ops.append(item.operation)
                pending_tiers.append(item.tier)
                continue

            expand, contract = _split_for_backfill(item.operation)
            if expand is not None:
                pending_ops.append(expand)
                pending_tiers.append(RiskTier.SAFE)
            if after_backfill:
                flush(Phase.CONTRACT, "contract")
            else:
                flush(Phase.EXPAND, "expand")

            requirement = _requirement_for(item.operation)
            marker = MigrationUnit(
                sequence=sequence,
                label=f"{label}_backfill_{sanitize_label(requirement.table)}_{sanitize_label(requirement.column)}",
                phase=Phase.BACKFILL,
                backfill=requirement,
            )
            if marker.checksum in satisfied:
                prerequisite = satisfied[marker.checksum]
            else:
                if marker.checksum in awaiting:
                    marker = awaiting[marker.checksum]
                else:
                    sequence += 1
                units.append(marker)
                prerequisite = marker.identifier

            pending_ops.append(contract)
            pending_tiers.append(RiskTier.REQUIRES_BACKFILL)
            after_backfill = True

        flush(Phase.CONTRACT if after_backfill else None, "contract" if after_backfill else "apply")
        return tuple(units)


def plan(
    ops: Sequence[ChangeOperation],
    *,
    context: SchemaModel,
    phased: bool = False,
    start_sequence: int = 1,
    label: str = "migration",
    classifier: Optional[RiskClassifier] = None,
) -> tuple[MigrationUnit, ...]:
    return MigrationPlanner(classifier).plan(
        ops,
        context=context,
        phased=phased,
        start_sequence=start_sequence,
        label=label,
    )


__all__ = [
    "BackfillRequirement",
    "MigrationPlanner",
    "MigrationUnit",
    "Phase",
    "plan",
    "sanitize_label",
]
