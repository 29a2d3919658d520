"""High-level operations shared by the CLI and the HTTP API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from schemaflow.config import Settings, get_settings
from schemaflow.services.application_lock import ApplicationLock
from schemaflow.services.change_operations import ChangeOperation, apply_operations
from schemaflow.services.database_connection import DatabaseConnection
from schemaflow.services.migration_applier import BackfillEvidence, MigrationApplier
from schemaflow.services.migration_errors import (
    LockTimeout,
    MigrationBlocked,
    SchemaDrift,
    SchemaSyntaxError,
    SemanticError,
)
from schemaflow.services.migration_history import MigrationHistoryStore, MigrationRecord, UnitStatus
from schemaflow.services.migration_planner import MigrationPlanner, MigrationUnit
from schemaflow.services.risk_classifier import ClassifiedOperation, RiskClassifier, RiskTier
from schemaflow.services.schema_differ import diff as diff_models
from schemaflow.services.schema_introspection import introspect
from schemaflow.services.schema_model import EMPTY_MODEL, SchemaModel
from schemaflow.services.schema_source import checksum

logger = logging.getLogger(__name__)


class ResultCode(IntEnum):
    SUCCESS = 0
    FAILED = 1
    BLOCKED = 2
    DRIFTED = 3
    LOCK_TIMEOUT = 4
    AWAITING_ACTION = 5
    INVALID_SCHEMA = 6


def result_code_for(exc: BaseException) -> ResultCode:
    if isinstance(exc, (SchemaSyntaxError, SemanticError)):
        return ResultCode.INVALID_SCHEMA
    if isinstance(exc, MigrationBlocked):
        return ResultCode.BLOCKED
    if isinstance(exc, SchemaDrift):
        return ResultCode.DRIFTED
    if isinstance(exc, LockTimeout):
        return ResultCode.LOCK_TIMEOUT
    return ResultCode.FAILED


@dataclass(frozen=True)
class MigrationPlan:
    base_checksum: str
    target_checksum: str
    operations: tuple[ClassifiedOperation, ...]
    units: tuple[MigrationUnit, ...]
    phased: bool = False
    base: SchemaModel = field(default=EMPTY_MODEL, repr=False, compare=False)

    @property
    def is_empty(self) -> bool:
        return not self.units

    @property
    def has_data_loss(self) -> bool:
        return any(item.tier is RiskTier.DATA_LOSS for item in self.operations)

    def unit_bases(self) -> dict[str, str]:
        """Checksum of the model each unit expects to start from."""

        bases: dict[str, str] = {}
        model = self.base
        for unit in self.units:
            bases[unit.identifier] = checksum(model)
            model = apply_operations(model, unit.operations)
        return bases


@dataclass(frozen=True)
class UnitOutcome:
    unit_id: str
    status: UnitStatus


@dataclass(frozen=True)
class ApplyReport:
    outcomes: tuple[UnitOutcome, ...] = ()

    @property
    def result_code(self) -> ResultCode:
        if any(outcome.status is UnitStatus.AWAITING_EXTERNAL_ACTION for outcome in self.outcomes):
            return ResultCode.AWAITING_ACTION
        return ResultCode.SUCCESS

    @property
    def applied(self) -> tuple[str, ...]:
        return tuple(o.unit_id for o in self.outcomes if o.status is UnitStatus.APPLIED)

    @property
    def awaiting(self) -> Optional[str]:
        for outcome in self.outcomes:
            if outcome.status is UnitStatus.AWAITING_EXTERNAL_ACTION:
                return outcome.unit_id
        return None


@dataclass(frozen=True)
class StatusReport:
    records: tuple[MigrationRecord, ...] = ()
    pending: tuple[MigrationUnit, ...] = ()
    blocking: Optional[MigrationRecord] = None
    drift: Optional[SchemaDrift] = field(default=None, compare=False)

    @property
    def applied(self) -> tuple[MigrationRecord, ...]:
        return tuple(r for r in self.records if r.effective_status is UnitStatus.APPLIED)

    @property
    def awaiting(self) -> tuple[MigrationRecord, ...]:
        return tuple(r for r in self.records if r.effective_status is UnitStatus.AWAITING_EXTERNAL_ACTION)

    @property
    def result_code(self) -> ResultCode:
        if self.blocking is not None:
            return ResultCode.BLOCKED
        if self.drift is not None:
            return ResultCode.DRIFTED
        if self.awaiting:
            return ResultCode.AWAITING_ACTION
        return ResultCode.SUCCESS


class MigrationEngine:
    """Wires the differ, planner, applier and history store for one target."""

    def __init__(
        self,
        history: MigrationHistoryStore,
        connection: Optional[DatabaseConnection] = None,
        *,
        settings: Optional[Settings] = None,
        applier: Optional[MigrationApplier] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._history = history
        self._connection = connection
        self._applier = applier
        if self._applier is None and connection is not None:
            lock = ApplicationLock(
                history.target,
                session_factory=history.session_factory,
                timeout=self._settings.lock_timeout_seconds,
                poll_interval=self._settings.lock_poll_interval_seconds,
                stale_after=self._settings.lock_stale_after_seconds,
            )
            self._applier = MigrationApplier(
                connection,
                history,
                lock=lock,
                require_data_loss_confirmation=self._settings.require_data_loss_confirmation,
            )

    @property
    def history(self) -> MigrationHistoryStore:
        return self._history

    def _require_applier(self) -> MigrationApplier:
        if self._applier is None:
            raise SemanticError("This operation needs a target database connection")
        return self._applier

    def _classifier(self) -> RiskClassifier:
        estimator = self._connection.estimate_row_count if self._connection is not None else None
        return RiskClassifier(
            row_count_estimator=estimator,
            large_table_threshold=self._settings.large_table_row_threshold,
        )

    def diff(self, old: SchemaModel, new: SchemaModel) -> tuple[ChangeOperation, ...]:
        return diff_models(old, new)

    @property
    def can_snapshot(self) -> bool:
        return getattr(self._connection, "engine", None) is not None

    def snapshot(self) -> SchemaModel:
        if not self.can_snapshot:
            raise SemanticError("A live snapshot needs a SQLAlchemy target connection")
        return introspect(self._connection.engine, reference=self._history.latest_applied_model())

    def drift_snapshot(self, *, skip: bool = False) -> Optional[SchemaModel]:
        """Live snapshot to check drift against before planning.

        Returns ``None`` when the caller opts out or the target cannot be introspected.
        """

        if skip or not self.can_snapshot:
            return None
        return self.snapshot()

    def plan(
        self,
        desired: SchemaModel,
        *,
        phased: Optional[bool] = None,
        live_snapshot: Optional[SchemaModel] = None,
        label: str = "migration",
    ) -> MigrationPlan:
        blocking = self._history.blocking_record()
        if blocking is not None:
            raise MigrationBlocked(blocking.unit_id, blocking.error_detail or "unit failed")
        if live_snapshot is not None:
            self._history.detect_drift(live_snapshot)

        phased = self._settings.phased_by_default if phased is None else phased
        base = self._history.latest_applied_model()
        classified = self._classifier().classify_all(diff_models(base, desired), base)
        units = MigrationPlanner().plan_classified(
            classified,
            phased=phased,
            start_sequence=self._history.next_sequence(),
            label=label,
            satisfied_backfills=self._history.satisfied_markers(),
            awaiting_backfills=self._history.awaiting_markers(),
        )
        logger.info(
            "Planned %d operations in %d units for %s",
            len(classified),
            len(units),
            self._history.target,
        )
        return MigrationPlan(
            base_checksum=checksum(base),
            target_checksum=checksum(desired.strip_rename_annotations()),
            operations=classified,
            units=units,
            phased=phased,
            base=base,
        )

    def apply(self, plan: MigrationPlan, *, confirm_data_loss: bool = False) -> ApplyReport:
        """Apply pending units in order, stopping at the first one waiting on a backfill.

        Failures propagate as exceptions once the ledger has recorded them. A plan
        whose base no longer matches the ledger is refused as stale.
        """

        applier = self._require_applier()
        bases = plan.unit_bases()
        outcomes: list[UnitOutcome] = []
        for unit in self._history.pending_units(plan.units):
            status = applier.apply(
                unit,
                confirm_data_loss=confirm_data_loss,
                expected_base=bases[unit.identifier],
            )
            outcomes.append(UnitOutcome(unit.identifier, status))
            if status is UnitStatus.AWAITING_EXTERNAL_ACTION:
                break
        return ApplyReport(outcomes=tuple(outcomes))

    def status(self, desired: Optional[SchemaModel] = None, *, live_snapshot: Optional[SchemaModel] = None) -> StatusReport:
        blocking = self._history.blocking_record()
        drift = self._history.drift_report(live_snapshot) if live_snapshot is not None else None
        if drift is not None and self._history.drift_acknowledged(drift.expected_checksum, drift.actual_checksum):
            drift = None
        pending: tuple[MigrationUnit, ...] = ()
        if desired is not None and blocking is None:
            pending = self.plan(desired).units
        return StatusReport(
            records=self._history.latest_records(),
            pending=pending,
            blocking=blocking,
            drift=drift,
        )

    def _marker(self, unit_id: str) -> MigrationUnit:
        record = self._history.latest_record(unit_id)
        if record is None:
            raise SemanticError(f"Unknown migration unit {unit_id}")
        unit = record.unit
        if not unit.is_backfill_marker:
            raise SemanticError(f"Unit {unit_id} is not a backfill marker")
        return unit

    def measure_backfill(self, unit_id: str) -> int:
        return self._require_applier().measure_backfill(self._marker(unit_id))

    def acknowledge_backfill(self, unit_id: str, evidence: BackfillEvidence) -> UnitStatus:
        return self._require_applier().acknowledge_backfill(self._marker(unit_id), evidence)

    def abandon_backfill(self, unit_id: str, note: str) -> UnitStatus:
        return self._require_applier().abandon_backfill(self._marker(unit_id), note)

    def resolve(self, unit_id: str, note: Optional[str] = None) -> MigrationRecord:
        return self._history.resolve(unit_id, note)

    def acknowledge_drift(self, live_snapshot: SchemaModel, note: Optional[str] = None) -> Optional[SchemaDrift]:
        drift = self._history.drift_report(live_snapshot)
        if drift is not None:
            self._history.acknowledge_drift(drift.expected_checksum, drift.actual_checksum, note)
        return drift


__all__ = [
    "ApplyReport",
    "MigrationEngine",
    "MigrationPlan",
    "ResultCode",
    "StatusReport",
    "UnitOutcome",
    "result_code_for",
]
