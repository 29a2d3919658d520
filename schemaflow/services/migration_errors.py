"""Error taxonomy shared by the migration engine."""

from __future__ import annotations

from typing import Sequence


class MigrationError(Exception):
    """Base class for every condition the migration engine surfaces to callers."""


class SchemaSyntaxError(MigrationError):
    """Raised when schema source text is malformed."""

    def __init__(self, line: int, column: int, message: str) -> None:
        super().__init__(f"line {line}, column {column}: {message}")
        self.line = line
        self.column = column
        self.message = message


class SemanticError(MigrationError):
    """Raised when a schema model is internally inconsistent."""

    def __init__(self, description: str) -> None:
        super().__init__(description)
        self.description = description


class MigrationBlocked(MigrationError):
    """Raised when a failed or unfinished unit prevents further migration work."""

    def __init__(self, blocking_unit: str, reason: str = "unit failed") -> None:
        super().__init__(f"Migration blocked by unit {blocking_unit}: {reason}")
        self.blocking_unit = blocking_unit
        self.reason = reason


class SchemaDrift(MigrationError):
    """Raised when the live database no longer matches the recorded history."""

    def __init__(
        self,
        expected_checksum: str,
        actual_checksum: str,
        differences: Sequence[str] = (),
    ) -> None:
        super().__init__(
            f"Live schema {actual_checksum[:12]} diverges from recorded history {expected_checksum[:12]}"
        )
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum
        self.differences = tuple(differences)


class LockTimeout(MigrationError):
    """Raised when the application lock could not be acquired in time. Safe to retry."""

    def __init__(self, target: str, waited_seconds: float) -> None:
        super().__init__(f"Timed out after {waited_seconds:.1f}s waiting for the migration lock on '{target}'")
        self.target = target
        self.waited_seconds = waited_seconds


class ApplyFailure(MigrationError):
    """Raised when a unit could not be applied; carries the completed prefix."""

    def __init__(
        self,
        unit_id: str,
        reason: str,
        completed_operations: Sequence[str] = (),
        failed_operation: str | None = None,
    ) -> None:
        super().__init__(f"Unit {unit_id} failed: {reason}")
        self.unit_id = unit_id
        self.reason = reason
        self.completed_operations = tuple(completed_operations)
        self.failed_operation = failed_operation


class BackfillEvidenceRejected(MigrationError):
    """Raised when backfill acknowledgement evidence does not satisfy the marker."""

    def __init__(self, unit_id: str, reason: str) -> None:
        super().__init__(f"Backfill evidence for {unit_id} rejected: {reason}")
        self.unit_id = unit_id
        self.reason = reason


class StatementExecutionError(MigrationError):
    """Raised by a database connection when a DDL statement fails."""

    def __init__(self, statement: str, detail: str) -> None:
        super().__init__(detail)
        self.statement = statement
        self.detail = detail


__all__ = [
    "ApplyFailure",
    "BackfillEvidenceRejected",
    "LockTimeout",
    "MigrationBlocked",
    "MigrationError",
    "SchemaDrift",
    "SchemaSyntaxError",
    "SemanticError",
    "StatementExecutionError",
]
