import logging
from typing import Iterator, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from schemaflow.config import get_settings
from schemaflow.database import SessionLocal, get_history_engine
from schemaflow.schemas import (
    ApplyRequest,
    ApplyResponse,
    BackfillAcknowledgeRequest,
    BackfillRequirementRead,
    DiffRequest,
    DiffResponse,
    DriftAcknowledgeResponse,
    DriftRead,
    NoteRequest,
    OperationRead,
    PlanRequest,
    PlanResponse,
    RecordRead,
    StatusResponse,
    UnitRead,
    UnitStatusResponse,
)
from schemaflow.services.database_connection import connect
from schemaflow.services.migration_applier import BackfillEvidence
from schemaflow.services.migration_engine import MigrationEngine, result_code_for
from schemaflow.services.migration_errors import (
    ApplyFailure,
    BackfillEvidenceRejected,
    LockTimeout,
    MigrationBlocked,
    MigrationError,
    SchemaDrift,
    SchemaSyntaxError,
    SemanticError,
)
from schemaflow.services.migration_history import MigrationHistoryStore, MigrationRecord
from schemaflow.services.migration_planner import MigrationUnit
from schemaflow.services.risk_classifier import ClassifiedOperation
from schemaflow.services.schema_source import parse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migrations", tags=["Migrations"])


def get_migration_engine() -> Iterator[MigrationEngine]:
    settings = get_settings()
    get_history_engine()
    history = MigrationHistoryStore(SessionLocal, target=settings.target_name)
    with connect(settings.effective_target_url, target_name=settings.target_name) as connection:
        yield MigrationEngine(history, connection, settings=settings)


def _raise_http(exc: MigrationError) -> NoReturn:
    code = int(result_code_for(exc))
    if isinstance(exc, SchemaSyntaxError):
        detail = {"error": "syntax", "line": exc.line, "column": exc.column, "message": exc.message}
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, SemanticError):
        detail = {"error": "semantic", "message": exc.description}
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, MigrationBlocked):
        detail = {"error": "blocked", "blocking_unit": exc.blocking_unit, "reason": exc.reason}
        raise HTTPException(status.HTTP_409_CONFLICT, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, SchemaDrift):
        detail = {"error": "drift", **_drift_read(exc).model_dump()}
        raise HTTPException(status.HTTP_409_CONFLICT, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, LockTimeout):
        detail = {"error": "lock_timeout", "target": exc.target, "waited_seconds": exc.waited_seconds}
        raise HTTPException(status.HTTP_423_LOCKED, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, BackfillEvidenceRejected):
        detail = {"error": "backfill_rejected", "unit_id": exc.unit_id, "reason": exc.reason}
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail={**detail, "result_code": code}) from exc
    if isinstance(exc, ApplyFailure):
        detail = {
            "error": "apply_failed",
            "unit_id": exc.unit_id,
            "reason": exc.reason,
            "completed_operations": list(exc.completed_operations),
            "failed_operation": exc.failed_operation,
        }
        status_code = (
            status.HTTP_400_BAD_REQUEST
            if exc.reason == "confirmation required"
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        raise HTTPException(status_code, detail={**detail, "result_code": code}) from exc
    logger.exception("Unhandled migration error")
    raise HTTPException(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "failed", "message": str(exc), "result_code": code},
    ) from exc


def _operation_read(operation, tier: Optional[str] = None) -> OperationRead:
    return OperationRead(
        kind=operation.kind,
        description=operation.describe(),
        inverse=operation.describe_inverse(),
        tables=list(operation.tables),
        tier=tier,
    )


def _classified_read(item: ClassifiedOperation) -> OperationRead:
    return _operation_read(item.operation, item.tier.value)


def _unit_read(unit: MigrationUnit) -> UnitRead:
    backfill = None
    if unit.backfill is not None:
        backfill = BackfillRequirementRead(
            table=unit.backfill.table,
            column=unit.backfill.column,
            predicate=unit.backfill.predicate,
            expected_violations=unit.backfill.expected_violations,
            verification_query=unit.backfill.verification_query,
        )
    return UnitRead(
        identifier=unit.identifier,
        sequence=unit.sequence,
        label=unit.label,
        phase=unit.phase.value if unit.phase else None,
        checksum=unit.checksum,
        prerequisite=unit.prerequisite,
        operations=[_operation_read(op, tier.value) for op, tier in zip(unit.operations, unit.tiers)],
        backfill=backfill,
    )


def _record_read(record: MigrationRecord) -> RecordRead:
    return RecordRead(
        unit_id=record.unit_id,
        sequence=record.sequence,
        label=record.label,
        phase=record.phase,
        checksum=record.checksum,
        status=record.effective_status.value,
        recorded_at=record.recorded_at,
        error_detail=record.error_detail,
        completed_operations=record.completed_operations,
        resolved=record.resolved,
    )


def _drift_read(drift: SchemaDrift) -> DriftRead:
    return DriftRead(
        expected_checksum=drift.expected_checksum,
        actual_checksum=drift.actual_checksum,
        differences=list(drift.differences),
    )


@router.post("/diff", response_model=DiffResponse)
def diff_schema(payload: DiffRequest, engine: MigrationEngine = Depends(get_migration_engine)) -> DiffResponse:
    try:
        desired = parse(payload.desired)
        current = parse(payload.current) if payload.current is not None else engine.history.latest_applied_model()
        operations = engine.diff(current, desired)
    except MigrationError as exc:
        _raise_http(exc)
    return DiffResponse(operations=[_operation_read(op) for op in operations])


@router.post("/plan", response_model=PlanResponse)
def plan_migration(payload: PlanRequest, engine: MigrationEngine = Depends(get_migration_engine)) -> PlanResponse:
    try:
        desired = parse(payload.source)
        snapshot = engine.drift_snapshot(skip=payload.skip_drift_check)
        plan = engine.plan(desired, phased=payload.phased, live_snapshot=snapshot, label=payload.label)
    except MigrationError as exc:
        _raise_http(exc)
    return PlanResponse(
        base_checksum=plan.base_checksum,
        target_checksum=plan.target_checksum,
        phased=plan.phased,
        has_data_loss=plan.has_data_loss,
        operations=[_classified_read(item) for item in plan.operations],
        units=[_unit_read(unit) for unit in plan.units],
    )


@router.post("/apply", response_model=ApplyResponse)
def apply_migration(payload: ApplyRequest, engine: MigrationEngine = Depends(get_migration_engine)) -> ApplyResponse:
    try:
        desired = parse(payload.source)
        snapshot = engine.drift_snapshot(skip=payload.skip_drift_check)
        plan = engine.plan(desired, phased=payload.phased, live_snapshot=snapshot, label=payload.label)
        report = engine.apply(plan, confirm_data_loss=payload.confirm_data_loss)
    except MigrationError as exc:
        _raise_http(exc)
    return ApplyResponse(
        result_code=int(report.result_code),
        result=report.result_code.name.lower(),
        applied=list(report.applied),
        awaiting=report.awaiting,
    )


@router.get("/status", response_model=StatusResponse)
def migration_status(
    skip_drift_check: bool = False,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> StatusResponse:
    try:
        snapshot = engine.drift_snapshot(skip=skip_drift_check)
        report = engine.status(live_snapshot=snapshot)
    except MigrationError as exc:
        _raise_http(exc)
    return StatusResponse(
        result_code=int(report.result_code),
        result=report.result_code.name.lower(),
        records=[_record_read(record) for record in report.records],
        pending=[_unit_read(unit) for unit in report.pending],
        blocking=_record_read(report.blocking) if report.blocking else None,
        drift=_drift_read(report.drift) if report.drift else None,
    )


@router.post("/backfills/{unit_id}/acknowledge", response_model=UnitStatusResponse)
def acknowledge_backfill(
    unit_id: str,
    payload: BackfillAcknowledgeRequest,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> UnitStatusResponse:
    try:
        remaining = payload.remaining_violations
        if remaining is None:
            remaining = engine.measure_backfill(unit_id)
        evidence = BackfillEvidence(remaining_violations=remaining, checksum=payload.checksum, note=payload.note)
        result = engine.acknowledge_backfill(unit_id, evidence)
    except MigrationError as exc:
        _raise_http(exc)
    return UnitStatusResponse(unit_id=unit_id, status=result.value)


@router.post("/backfills/{unit_id}/abandon", response_model=UnitStatusResponse)
def abandon_backfill(
    unit_id: str,
    payload: NoteRequest,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> UnitStatusResponse:
    try:
        result = engine.abandon_backfill(unit_id, payload.note or "abandoned by operator")
    except MigrationError as exc:
        _raise_http(exc)
    return UnitStatusResponse(unit_id=unit_id, status=result.value)


@router.post("/failures/{unit_id}/resolve", response_model=RecordRead)
def resolve_failure(
    unit_id: str,
    payload: NoteRequest,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> RecordRead:
    try:
        record = engine.resolve(unit_id, payload.note)
    except MigrationError as exc:
        _raise_http(exc)
    return _record_read(record)


@router.post("/drift/acknowledge", response_model=DriftAcknowledgeResponse)
def acknowledge_drift(
    payload: NoteRequest,
    engine: MigrationEngine = Depends(get_migration_engine),
) -> DriftAcknowledgeResponse:
    try:
        drift = engine.acknowledge_drift(engine.snapshot(), payload.note)
    except MigrationError as exc:
        _raise_http(exc)
    return DriftAcknowledgeResponse(
        acknowledged=drift is not None,
        drift=_drift_read(drift) if drift else None,
    )
