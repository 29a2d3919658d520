"""Append-only ledger of migration unit outcomes for one target database."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from schemaflow.database import SessionLocal
from schemaflow.models import DriftAcknowledgement, MigrationRecordEntry, MigrationResolution, utcnow
from schemaflow.services.change_operations import apply_operations
from schemaflow.services.migration_errors import MigrationError, SchemaDrift, SemanticError
from schemaflow.services.migration_planner import MigrationUnit, Phase
from schemaflow.services.schema_differ import diff
from schemaflow.services.schema_model import EMPTY_MODEL, SchemaModel
from schemaflow.services.schema_source import checksum, serialize

logger = logging.getLogger(__name__)


class UnitStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    AWAITING_EXTERNAL_ACTION = "awaiting_external_action"


class HistoryStoreError(MigrationError):
    """Raised when the ledger cannot be read or written."""


@dataclass(frozen=True)
class MigrationRecord:
    unit_id: str
    sequence: int
    label: str
    phase: Optional[str]
    checksum: str
    status: UnitStatus
    payload: dict = field(default_factory=dict)
    error_detail: Optional[str] = None
    completed_operations: int = 0
    recorded_at: Optional[datetime] = None
    id: Optional[int] = None
    resolved: bool = False

    @classmethod
    def for_unit(
        cls,
        unit: MigrationUnit,
        status: UnitStatus,
        *,
        error_detail: Optional[str] = None,
        completed_operations: int = 0,
    ) -> "MigrationRecord":
        if status is UnitStatus.AWAITING_EXTERNAL_ACTION:
            raise SemanticError("Awaiting markers are recorded as pending")
        return cls(
            unit_id=unit.identifier,
            sequence=unit.sequence,
            label=unit.label,
            phase=unit.phase.value if unit.phase else None,
            checksum=unit.checksum,
            status=status,
            payload=unit.to_payload(),
            error_detail=error_detail,
            completed_operations=completed_operations,
        )

    @property
    def is_backfill_marker(self) -> bool:
        return self.phase == Phase.BACKFILL.value

    @property
    def effective_status(self) -> UnitStatus:
        if self.is_backfill_marker and self.status is UnitStatus.PENDING:
            return UnitStatus.AWAITING_EXTERNAL_ACTION
        return self.status

    @property
    def unit(self) -> MigrationUnit:
        return MigrationUnit.from_payload(
            sequence=self.sequence,
            label=self.label,
            phase=self.phase,
            checksum=self.checksum,
            payload=self.payload,
        )


def _to_record(entry: MigrationRecordEntry, resolved_ids: set[int]) -> MigrationRecord:
    return MigrationRecord(
        id=entry.id,
        unit_id=entry.unit_id,
        sequence=entry.sequence,
        label=entry.label,
        phase=entry.phase,
        checksum=entry.checksum,
        status=UnitStatus(entry.status),
        payload=dict(entry.payload or {}),
        error_detail=entry.error_detail,
        completed_operations=entry.completed_operations,
        recorded_at=entry.recorded_at,
        resolved=entry.id in resolved_ids,
    )


def normalize_for_drift(model: SchemaModel) -> SchemaModel:
    return model.without_object_names().strip_rename_annotations()


class MigrationHistoryStore:
    """Persist and query ledger records for ``target`` in the history database."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        target: str = "default",
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.target = target

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise HistoryStoreError(f"Unable to {action}: {exc}") from exc

    # Writes

    def append(self, record: MigrationRecord) -> MigrationRecord:
        if record.status is UnitStatus.AWAITING_EXTERNAL_ACTION:
            raise SemanticError("Awaiting markers are recorded as pending")
        entry = MigrationRecordEntry(
            target=self.target,
            unit_id=record.unit_id,
            sequence=record.sequence,
            label=record.label,
            phase=record.phase,
            checksum=record.checksum,
            status=record.status.value,
            recorded_at=record.recorded_at or utcnow(),
            error_detail=record.error_detail,
            completed_operations=record.completed_operations,
            payload=record.payload,
        )
        with self._session(f"record {record.status.value} for {record.unit_id}") as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            stored = _to_record(entry, set())
        logger.info("Recorded %s for unit %s on %s", record.status.value, record.unit_id, self.target)
        return stored

    def record(
        self,
        unit: MigrationUnit,
        status: UnitStatus,
        *,
        error_detail: Optional[str] = None,
        completed_operations: int = 0,
    ) -> MigrationRecord:
        return self.append(
            MigrationRecord.for_unit(
                unit,
                status,
                error_detail=error_detail,
                completed_operations=completed_operations,
            )
        )

    def resolve(self, unit_id: str, note: Optional[str] = None) -> MigrationRecord:
        """Mark the unit's latest failure as handled so later units may proceed."""

        latest = self.latest_record(unit_id)
        if latest is None or latest.status is not UnitStatus.FAILED or latest.resolved:
            raise SemanticError(f"Unit {unit_id} has no unresolved failure to resolve")
        with self._session(f"resolve {unit_id}") as session:
            session.add(
                MigrationResolution(
                    target=self.target,
                    unit_id=unit_id,
                    record_id=latest.id,
                    note=note,
                )
            )
            session.commit()
        logger.info("Resolved failed unit %s on %s", unit_id, self.target)
        return replace(latest, resolved=True)

    def acknowledge_drift(self, expected_checksum: str, actual_checksum: str, note: Optional[str] = None) -> None:
        with self._session("acknowledge drift") as session:
            session.add(
                DriftAcknowledgement(
                    target=self.target,
                    expected_checksum=expected_checksum,
                    actual_checksum=actual_checksum,
                    note=note,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                # Acknowledging the same pair twice is harmless.
                session.rollback()
                return
        logger.warning(
            "Drift acknowledged on %s: history %s, live %s",
            self.target,
            expected_checksum[:12],
            actual_checksum[:12],
        )

    # Reads

    def records(self) -> tuple[MigrationRecord, ...]:
        with self._session(f"read the ledger for {self.target}") as session:
            resolved_ids = set(
                session.scalars(
                    select(MigrationResolution.record_id).where(MigrationResolution.target == self.target)
                ).all()
            )
            entries = session.scalars(
                select(MigrationRecordEntry)
                .where(MigrationRecordEntry.target == self.target)
                .order_by(MigrationRecordEntry.id)
            ).all()
            return tuple(_to_record(entry, resolved_ids) for entry in entries)

    def latest_records(self) -> tuple[MigrationRecord, ...]:
        """Latest record per unit, ordered by unit sequence."""

        latest: dict[str, MigrationRecord] = {}
        for record in self.records():
            latest[record.unit_id] = record
        return tuple(sorted(latest.values(), key=lambda record: (record.sequence, record.id or 0)))

    def latest_record(self, unit_id: str) -> Optional[MigrationRecord]:
        for record in reversed(self.records()):
            if record.unit_id == unit_id:
                return record
        return None

    def status_of(self, unit_id: str) -> Optional[UnitStatus]:
        record = self.latest_record(unit_id)
        return record.effective_status if record else None

    def is_applied(self, unit: MigrationUnit) -> bool:
        return any(
            record.unit_id == unit.identifier
            and record.checksum == unit.checksum
            and record.status is UnitStatus.APPLIED
            for record in self.records()
        )

    def is_unit_applied(self, unit_id: str) -> bool:
        return self.status_of(unit_id) is UnitStatus.APPLIED

    def latest_applied_model(self, *, exclude: Optional[str] = None) -> SchemaModel:
        """Fold every applied unit, plus the executed prefix of failed units, in ledger order.

        Records of unit ``exclude`` are left out, giving the model that unit started from.
        """

        terminal: dict[str, MigrationRecord] = {}
        for record in self.records():
            if record.unit_id == exclude:
                continue
            if record.status in (UnitStatus.APPLIED, UnitStatus.FAILED):
                terminal[record.unit_id] = record

        model = EMPTY_MODEL
        for record in sorted(terminal.values(), key=lambda item: item.id or 0):
            operations = record.unit.operations
            if record.status is UnitStatus.FAILED:
                operations = operations[: record.completed_operations]
            model = apply_operations(model, operations)
        return model

    def pending_units(self, units: Sequence[MigrationUnit]) -> tuple[MigrationUnit, ...]:
        applied = {
            (record.unit_id, record.checksum) for record in self.records() if record.status is UnitStatus.APPLIED
        }
        return tuple(unit for unit in units if (unit.identifier, unit.checksum) not in applied)

    def blocking_record(self) -> Optional[MigrationRecord]:
        for record in self.latest_records():
            if record.status is UnitStatus.FAILED and not record.resolved:
                return record
        return None

    def awaiting_markers(self) -> dict[str, MigrationUnit]:
        return {
            record.checksum: record.unit
            for record in self.latest_records()
            if record.effective_status is UnitStatus.AWAITING_EXTERNAL_ACTION
        }

    def satisfied_markers(self) -> dict[str, str]:
        """Acknowledged markers whose contract unit has not been applied yet.

        Once the contract lands the marker is spent; tightening the column again
        later needs a fresh backfill.
        """

        latest = self.latest_records()
        spent = {
            record.payload.get("prerequisite")
            for record in latest
            if record.status is UnitStatus.APPLIED and not record.is_backfill_marker
        }
        return {
            record.checksum: record.unit_id
            for record in latest
            if record.is_backfill_marker and record.status is UnitStatus.APPLIED and record.unit_id not in spent
        }

    def next_sequence(self) -> int:
        """Sequence for the next planned unit.

        Units left ``pending`` by an interrupted apply give their sequence back, so
        re-planning reproduces the same identifier.
        """

        sequences = [
            record.sequence
            for record in self.latest_records()
            if record.status is not UnitStatus.PENDING or record.is_backfill_marker
        ]
        return max(sequences, default=0) + 1

    def drift_acknowledged(self, expected_checksum: str, actual_checksum: str) -> bool:
        with self._session("read drift acknowledgements") as session:
            found = session.scalar(
                select(DriftAcknowledgement.id).where(
                    DriftAcknowledgement.target == self.target,
                    DriftAcknowledgement.expected_checksum == expected_checksum,
                    DriftAcknowledgement.actual_checksum == actual_checksum,
                )
            )
        return found is not None

    def drift_report(self, live_snapshot: SchemaModel) -> Optional[SchemaDrift]:
        """Return the drift between history and ``live_snapshot``, ignoring acknowledgements."""

        expected = normalize_for_drift(self.latest_applied_model())
        actual = normalize_for_drift(live_snapshot)
        if serialize(expected) == serialize(actual):
            return None
        differences = [operation.describe() for operation in diff(expected, actual)]
        if not differences:
            differences = ["column order differs"]
        return SchemaDrift(checksum(expected), checksum(actual), differences)

    def detect_drift(self, live_snapshot: SchemaModel) -> None:
        drift = self.drift_report(live_snapshot)
        if drift is None:
            return
        if self.drift_acknowledged(drift.expected_checksum, drift.actual_checksum):
            logger.info("Ignoring acknowledged drift on %s", self.target)
            return
        logger.warning("Schema drift detected on %s: %s", self.target, "; ".join(drift.differences))
        raise drift


__all__ = [
    "HistoryStoreError",
    "MigrationHistoryStore",
    "MigrationRecord",
    "UnitStatus",
    "normalize_for_drift",
]
