"""Execute migration units against a target database and record the outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from schemaflow.services.application_lock import ApplicationLock
from schemaflow.services.change_operations import ChangeOperation
from schemaflow.services.database_connection import DatabaseConnection
from schemaflow.services.ddl_renderer import Dialect, render_unit
from schemaflow.services.migration_errors import (
    ApplyFailure,
    BackfillEvidenceRejected,
    MigrationBlocked,
    SemanticError,
    StatementExecutionError,
)
from schemaflow.services.migration_history import MigrationHistoryStore, MigrationRecord, UnitStatus
from schemaflow.services.migration_planner import MigrationUnit
from schemaflow.services.risk_classifier import RiskTier
from schemaflow.services.schema_source import checksum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillEvidence:
    """What the operator reports after running a backfill outside the engine."""

    remaining_violations: int
    checksum: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class _RenderedOperation:
    index: int
    operation: ChangeOperation
    statements: tuple[str, ...]


class MigrationApplier:
    def __init__(
        self,
        connection: DatabaseConnection,
        history: MigrationHistoryStore,
        *,
        lock: Optional[ApplicationLock] = None,
        require_data_loss_confirmation: bool = True,
    ) -> None:
        self._connection = connection
        self._history = history
        self._lock = lock or ApplicationLock(history.target, session_factory=history.session_factory)
        self._require_confirmation = require_data_loss_confirmation
        self._dialect = Dialect.parse(connection.dialect_name)

    @property
    def history(self) -> MigrationHistoryStore:
        return self._history

    def _ensure_not_blocked(self) -> None:
        blocking = self._history.blocking_record()
        if blocking is not None:
            raise MigrationBlocked(blocking.unit_id, blocking.error_detail or "unit failed")

    def _resume_index(self, unit: MigrationUnit, latest: Optional[MigrationRecord]) -> int:
        # A resolved failure resumes after the operations that already ran.
        if (
            latest is not None
            and latest.status is UnitStatus.FAILED
            and latest.resolved
            and latest.checksum == unit.checksum
        ):
            return latest.completed_operations
        return 0

    def _render(self, unit: MigrationUnit, start: int) -> list[_RenderedOperation]:
        statements = render_unit(
            unit.operations,
            self._dialect,
            context=self._history.latest_applied_model(),
            start=start,
        )
        return [
            _RenderedOperation(index=index, operation=unit.operations[index], statements=tuple(items))
            for index, items in enumerate(statements, start=start)
        ]

    def _ensure_current(self, unit: MigrationUnit, expected_base: Optional[str]) -> None:
        for record in self._history.records():
            if (
                record.unit_id == unit.identifier
                and record.status is UnitStatus.APPLIED
                and record.checksum != unit.checksum
            ):
                raise MigrationBlocked(unit.identifier, "plan is stale: a different unit was applied under this id")
        if expected_base is None:
            return
        current = checksum(self._history.latest_applied_model(exclude=unit.identifier))
        if current != expected_base:
            logger.warning(
                "Refusing stale unit %s on %s: planned against %s, history is at %s",
                unit.identifier,
                self._history.target,
                expected_base[:12],
                current[:12],
            )
            raise MigrationBlocked(unit.identifier, "plan is stale: history changed since it was planned")

    def apply(
        self,
        unit: MigrationUnit,
        *,
        confirm_data_loss: bool = False,
        expected_base: Optional[str] = None,
    ) -> UnitStatus:
        """Apply one unit under the target lock.

        ``expected_base`` is the checksum of the model the unit was planned against;
        when given, the unit is refused if the ledger has moved on since.
        """

        if unit.has_data_loss and self._require_confirmation and not confirm_data_loss:
            destructive = next(
                op for op, tier in zip(unit.operations, unit.tiers) if tier is RiskTier.DATA_LOSS
            )
            raise ApplyFailure(unit.identifier, "confirmation required", (), destructive.describe())

        with self._lock.hold():
            self._ensure_not_blocked()

            if self._history.is_applied(unit):
                logger.info("Unit %s is already applied on %s", unit.identifier, self._history.target)
                return UnitStatus.APPLIED

            self._ensure_current(unit, expected_base)

            if unit.prerequisite and not self._history.is_unit_applied(unit.prerequisite):
                raise MigrationBlocked(unit.prerequisite, "backfill not acknowledged")

            latest = self._history.latest_record(unit.identifier)
            if unit.is_backfill_marker:
                if latest is None or latest.effective_status is not UnitStatus.AWAITING_EXTERNAL_ACTION:
                    self._history.record(unit, UnitStatus.PENDING)
                logger.info(
                    "Unit %s awaits a backfill of %s.%s",
                    unit.identifier,
                    unit.backfill.table,
                    unit.backfill.column,
                )
                return UnitStatus.AWAITING_EXTERNAL_ACTION

            start = self._resume_index(unit, latest)
            rendered = self._render(unit, start)
            self._history.record(unit, UnitStatus.PENDING, completed_operations=start)
            if self._connection.supports_transactional_ddl:
                self._execute_transactional(unit, rendered, start)
            else:
                self._execute_sequential(unit, rendered, start)

            self._history.record(unit, UnitStatus.APPLIED, completed_operations=len(unit.operations))
            logger.info("Applied unit %s on %s", unit.identifier, self._history.target)
            return UnitStatus.APPLIED

    def _fail(
        self,
        unit: MigrationUnit,
        completed: int,
        failed: Optional[ChangeOperation],
        exc: StatementExecutionError,
    ) -> ApplyFailure:
        self._history.record(
            unit,
            UnitStatus.FAILED,
            error_detail=f"{exc.detail} ({exc.statement})",
            completed_operations=completed,
        )
        logger.error(
            "Unit %s failed after %d of %d operations: %s",
            unit.identifier,
            completed,
            len(unit.operations),
            exc.detail,
        )
        return ApplyFailure(
            unit.identifier,
            exc.detail,
            tuple(op.describe() for op in unit.operations[:completed]),
            failed.describe() if failed is not None else None,
        )

    def _execute_transactional(self, unit: MigrationUnit, rendered: list[_RenderedOperation], start: int) -> None:
        current: Optional[ChangeOperation] = None
        self._connection.begin_transaction()
        try:
            for item in rendered:
                current = item.operation
                for statement in item.statements:
                    self._connection.execute(statement)
            current = None
            self._connection.commit()
        except StatementExecutionError as exc:
            self._connection.rollback()
            raise self._fail(unit, start, current, exc) from exc
        except BaseException:
            self._connection.rollback()
            raise

    def _execute_sequential(self, unit: MigrationUnit, rendered: list[_RenderedOperation], start: int) -> None:
        completed = start
        for item in rendered:
            try:
                for statement in item.statements:
                    self._connection.execute(statement)
            except StatementExecutionError as exc:
                raise self._fail(unit, completed, item.operation, exc) from exc
            completed = item.index + 1

    def measure_backfill(self, unit: MigrationUnit) -> int:
        """Count the rows that still violate the marker's requirement."""

        if not unit.is_backfill_marker:
            raise SemanticError(f"Unit {unit.identifier} is not a backfill marker")
        value = self._connection.query_scalar(unit.backfill.verification_query)
        return int(value or 0)

    def acknowledge_backfill(self, unit: MigrationUnit, evidence: BackfillEvidence) -> UnitStatus:
        if not unit.is_backfill_marker:
            raise SemanticError(f"Unit {unit.identifier} is not a backfill marker")
        requirement = unit.backfill

        with self._lock.hold():
            status = self._history.status_of(unit.identifier)
            if status is UnitStatus.APPLIED:
                return UnitStatus.APPLIED
            if status is not UnitStatus.AWAITING_EXTERNAL_ACTION:
                raise BackfillEvidenceRejected(unit.identifier, "unit is not awaiting a backfill")
            if evidence.remaining_violations > requirement.expected_violations:
                raise BackfillEvidenceRejected(
                    unit.identifier,
                    f"{evidence.remaining_violations} rows still match {requirement.predicate}",
                )
            if requirement.expected_checksum and evidence.checksum != requirement.expected_checksum:
                raise BackfillEvidenceRejected(unit.identifier, "evidence checksum does not match")

            self._history.record(unit, UnitStatus.APPLIED, error_detail=evidence.note)
            logger.info("Backfill for %s acknowledged", unit.identifier)
            return UnitStatus.APPLIED

    def abandon_backfill(self, unit: MigrationUnit, note: str) -> UnitStatus:
        if not unit.is_backfill_marker:
            raise SemanticError(f"Unit {unit.identifier} is not a backfill marker")

        with self._lock.hold():
            if self._history.status_of(unit.identifier) is not UnitStatus.AWAITING_EXTERNAL_ACTION:
                raise SemanticError(f"Unit {unit.identifier} is not awaiting a backfill")
            self._history.record(unit, UnitStatus.FAILED, error_detail=f"abandoned: {note}")
            logger.warning("Backfill for %s abandoned: %s", unit.identifier, note)
            return UnitStatus.FAILED


__all__ = ["BackfillEvidence", "MigrationApplier"]
