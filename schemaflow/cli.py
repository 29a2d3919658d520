"""Command line entry point; exit statuses are ``ResultCode`` values."""

from __future__ import annotations

import argparse
import logging
import sys
from contextlib import contextmanager
from typing import Callable, ContextManager, Iterator, Optional, Sequence

from schemaflow.config import Settings, get_settings
from schemaflow.database import SessionLocal, get_history_engine, init_history_schema
from schemaflow.services.database_connection import connect
from schemaflow.services.migration_applier import BackfillEvidence
from schemaflow.services.migration_engine import MigrationEngine, MigrationPlan, ResultCode, result_code_for
from schemaflow.services.migration_errors import (
    ApplyFailure,
    MigrationBlocked,
    MigrationError,
    SchemaDrift,
    SchemaSyntaxError,
    SemanticError,
)
from schemaflow.services.migration_history import MigrationHistoryStore
from schemaflow.services.schema_source import load, serialize

logger = logging.getLogger(__name__)

EngineFactory = Callable[[Settings], ContextManager[MigrationEngine]]


@contextmanager
def default_engine_factory(settings: Settings) -> Iterator[MigrationEngine]:
    get_history_engine(settings.history_database_url)
    history = MigrationHistoryStore(SessionLocal, target=settings.target_name)
    with connect(settings.effective_target_url, target_name=settings.target_name) as connection:
        yield MigrationEngine(history, connection, settings=settings)


def _schema_path(args: argparse.Namespace, settings: Settings) -> str:
    path = getattr(args, "schema", None) or settings.schema_path
    if not path:
        raise SemanticError("A schema file is required: pass --schema or set SCHEMAFLOW_SCHEMA_PATH")
    return path


def _print_plan(plan: MigrationPlan) -> None:
    if plan.is_empty:
        print("No changes.")
        return
    for unit in plan.units:
        header = unit.identifier
        if unit.phase:
            header = f"{header} [{unit.phase.value}]"
        if unit.prerequisite:
            header = f"{header} (after {unit.prerequisite})"
        print(header)
        if unit.backfill is not None:
            print(f"  backfill {unit.backfill.table}.{unit.backfill.column}")
            print(f"  verify: {unit.backfill.verification_query}")
        for operation, tier in zip(unit.operations, unit.tiers):
            print(f"  [{tier.value}] {operation.describe()}")
    if plan.has_data_loss:
        print("This plan loses data; apply with --confirm-data-loss.")


def _cmd_diff(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    desired = load(_schema_path(args, settings))
    current = load(args.base) if args.base else engine.history.latest_applied_model()
    operations = engine.diff(current, desired)
    if not operations:
        print("No changes.")
    for operation in operations:
        print(operation.describe())
    return ResultCode.SUCCESS


def _snapshot(engine: MigrationEngine, args: argparse.Namespace):
    return engine.drift_snapshot(skip=getattr(args, "skip_drift_check", False))


def _cmd_plan(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    desired = load(_schema_path(args, settings))
    plan = engine.plan(desired, phased=args.phased, live_snapshot=_snapshot(engine, args), label=args.label)
    _print_plan(plan)
    return ResultCode.SUCCESS


def _cmd_apply(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    desired = load(_schema_path(args, settings))
    plan = engine.plan(desired, phased=args.phased, live_snapshot=_snapshot(engine, args), label=args.label)
    report = engine.apply(plan, confirm_data_loss=args.confirm_data_loss)
    for unit_id in report.applied:
        print(f"applied {unit_id}")
    if report.awaiting:
        print(f"{report.awaiting} is waiting for a backfill; run acknowledge-backfill once it is done.")
    if not report.outcomes:
        print("Nothing to apply.")
    return report.result_code


def _cmd_status(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    schema = getattr(args, "schema", None) or settings.schema_path
    desired = load(schema) if schema else None
    report = engine.status(desired, live_snapshot=_snapshot(engine, args))
    for record in report.records:
        line = f"{record.unit_id}: {record.effective_status.value}"
        if record.resolved:
            line = f"{line} (resolved)"
        if record.error_detail:
            line = f"{line} - {record.error_detail}"
        print(line)
    for unit in report.pending:
        print(f"{unit.identifier}: not applied")
    if report.blocking is not None:
        print(f"Blocked by {report.blocking.unit_id}; resolve it before applying further units.")
    if report.drift is not None:
        print("Live schema drifted from history:")
        for difference in report.drift.differences:
            print(f"  {difference}")
    return report.result_code


def _cmd_acknowledge_backfill(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    remaining = args.remaining
    if remaining is None:
        remaining = engine.measure_backfill(args.unit_id)
        print(f"{remaining} rows still violate the requirement")
    evidence = BackfillEvidence(remaining_violations=remaining, checksum=args.checksum, note=args.note)
    status = engine.acknowledge_backfill(args.unit_id, evidence)
    print(f"{args.unit_id}: {status.value}")
    return ResultCode.SUCCESS


def _cmd_abandon_backfill(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    status = engine.abandon_backfill(args.unit_id, args.note)
    print(f"{args.unit_id}: {status.value}")
    return ResultCode.SUCCESS


def _cmd_resolve(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    record = engine.resolve(args.unit_id, args.note)
    print(f"{record.unit_id}: resolved")
    return ResultCode.SUCCESS


def _cmd_acknowledge_drift(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    drift = engine.acknowledge_drift(engine.snapshot(), args.note)
    if drift is None:
        print("No drift to acknowledge.")
    else:
        print(f"Acknowledged drift {drift.expected_checksum[:12]} -> {drift.actual_checksum[:12]}")
    return ResultCode.SUCCESS


def _cmd_export(engine: MigrationEngine, args: argparse.Namespace, settings: Settings) -> ResultCode:
    model = engine.snapshot() if args.live else engine.history.latest_applied_model()
    sys.stdout.write(serialize(model))
    return ResultCode.SUCCESS


_COMMANDS = {
    "diff": _cmd_diff,
    "plan": _cmd_plan,
    "apply": _cmd_apply,
    "status": _cmd_status,
    "acknowledge-backfill": _cmd_acknowledge_backfill,
    "abandon-backfill": _cmd_abandon_backfill,
    "resolve": _cmd_resolve,
    "acknowledge-drift": _cmd_acknowledge_drift,
    "export": _cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="schemaflow", description="Plan and apply declarative schema migrations.")
    parser.add_argument("--history-url", help="SQLAlchemy URL of the history ledger database")
    parser.add_argument("--target-url", help="SQLAlchemy URL of the database to migrate")
    parser.add_argument("--target", help="Name keying the ledger and the application lock")
    parser.add_argument("--log-level", help="Logging level for schemaflow modules")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def _with_schema(sub: argparse.ArgumentParser, required: bool = False) -> None:
        sub.add_argument("--schema", required=required, help="Path to the desired schema source")

    def _with_planning(sub: argparse.ArgumentParser) -> None:
        _with_schema(sub)
        sub.add_argument(
            "--phased",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Split backfill-requiring changes into expand/backfill/contract units",
        )
        sub.add_argument("--label", default="migration", help="Label used in unit identifiers")
        sub.add_argument(
            "--skip-drift-check",
            action="store_true",
            help="Plan without comparing the live schema with history first",
        )

    diff_parser = subparsers.add_parser("diff", help="Show the operations between two schemas")
    _with_schema(diff_parser)
    diff_parser.add_argument("--base", help="Schema source to diff from (defaults to recorded history)")

    _with_planning(subparsers.add_parser("plan", help="Plan migration units for a schema"))

    apply_parser = subparsers.add_parser("apply", help="Apply pending migration units")
    _with_planning(apply_parser)
    apply_parser.add_argument("--confirm-data-loss", action="store_true", help="Allow units that drop data")

    status_parser = subparsers.add_parser("status", help="Show recorded and pending units")
    _with_schema(status_parser)
    status_parser.add_argument(
        "--skip-drift-check",
        action="store_true",
        help="Report without comparing the live schema with history",
    )

    ack_parser = subparsers.add_parser("acknowledge-backfill", help="Record that a backfill has completed")
    ack_parser.add_argument("unit_id")
    ack_parser.add_argument("--remaining", type=int, help="Rows still violating; measured when omitted")
    ack_parser.add_argument("--checksum", help="Checksum evidence when the requirement expects one")
    ack_parser.add_argument("--note")

    abandon_parser = subparsers.add_parser("abandon-backfill", help="Give up on a pending backfill")
    abandon_parser.add_argument("unit_id")
    abandon_parser.add_argument("--note", required=True)

    resolve_parser = subparsers.add_parser("resolve", help="Mark a failed unit as handled")
    resolve_parser.add_argument("unit_id")
    resolve_parser.add_argument("--note")

    drift_parser = subparsers.add_parser("acknowledge-drift", help="Accept the current live schema drift")
    drift_parser.add_argument("--note")

    export_parser = subparsers.add_parser("export", help="Print the recorded (or live) schema as source")
    export_parser.add_argument("--live", action="store_true", help="Introspect the target instead of history")

    subparsers.add_parser("init", help="Create the history ledger tables")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides = {}
    if args.history_url:
        overrides["history_database_url"] = args.history_url
    if args.target_url:
        overrides["target_database_url"] = args.target_url
    if args.target:
        overrides["target_name"] = args.target
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    return settings.model_copy(update=overrides) if overrides else settings


def _report_error(exc: MigrationError) -> None:
    if isinstance(exc, SchemaSyntaxError):
        print(f"Syntax error at line {exc.line}, column {exc.column}: {exc.message}", file=sys.stderr)
    elif isinstance(exc, MigrationBlocked):
        print(f"Blocked by unit {exc.blocking_unit}: {exc.reason}", file=sys.stderr)
    elif isinstance(exc, SchemaDrift):
        print(str(exc), file=sys.stderr)
        for difference in exc.differences:
            print(f"  {difference}", file=sys.stderr)
    elif isinstance(exc, ApplyFailure):
        print(str(exc), file=sys.stderr)
        for description in exc.completed_operations:
            print(f"  completed: {description}", file=sys.stderr)
        if exc.failed_operation:
            print(f"  failed: {exc.failed_operation}", file=sys.stderr)
    else:
        print(str(exc), file=sys.stderr)


def run(argv: Optional[Sequence[str]] = None, *, engine_factory: Optional[EngineFactory] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = _settings_from_args(args)
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
    logging.getLogger("schemaflow").setLevel(getattr(logging, settings.log_level, logging.INFO))

    if args.command == "init":
        init_history_schema(get_history_engine(settings.history_database_url))
        print("History tables are ready.")
        return int(ResultCode.SUCCESS)

    factory = engine_factory or default_engine_factory
    try:
        with factory(settings) as engine:
            return int(_COMMANDS[args.command](engine, args, settings))
    except MigrationError as exc:
        _report_error(exc)
        return int(result_code_for(exc))
    except OSError as exc:
        print(f"Unable to read schema source: {exc}", file=sys.stderr)
        return int(ResultCode.FAILED)


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
