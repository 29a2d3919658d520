"""Static risk rules for change operations.

Classification is advisory: the planner uses it to decide where to split
phased plans and the applier uses it to demand confirmation for data loss.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Mapping, Optional

from schemaflow.constants.column_types import WIDENING_CONVERSIONS
from schemaflow.services.change_operations import (
    AddColumn,
    AddConstraint,
    AddIndex,
    AlterColumnNullability,
    AlterColumnType,
    AlterEnumValues,
    ChangeOperation,
    DropColumn,
    DropTable,
    RenameTable,
)
from schemaflow.services.schema_model import ColumnType, ConstraintKind, SchemaModel

logger = logging.getLogger(__name__)

RowCountEstimator = Callable[[str], Optional[int]]


class RiskTier(str, Enum):
    SAFE = "safe"
    DATA_LOSS = "data-loss"
    LOCKING = "locking"
    REQUIRES_BACKFILL = "requires-backfill"


@dataclass(frozen=True)
class ClassifiedOperation:
    operation: ChangeOperation
    tier: RiskTier


def _with_table_alias(op: ChangeOperation, aliases: Mapping[str, str]) -> ChangeOperation:
    table = getattr(op, "table", None)
    if isinstance(table, str) and table in aliases:
        return replace(op, table=aliases[table])
    return op


def is_widening(from_type: ColumnType, to_type: ColumnType) -> bool:
    if from_type == to_type:
        return True
    return (from_type.scalar.value, to_type.scalar.value) in WIDENING_CONVERSIONS


class RiskClassifier:
    """Applies the rule table using an optional row-count estimator for table size."""

    def __init__(
        self,
        *,
        row_count_estimator: Optional[RowCountEstimator] = None,
        large_table_threshold: int = 1_000_000,
    ) -> None:
        self._estimator = row_count_estimator
        self._threshold = large_table_threshold
        self._cache: dict[str, Optional[int]] = {}

    def estimate(self, table: str, context: SchemaModel) -> Optional[int]:
        # Tables absent from the pre-migration model are created by the plan and hold no rows yet.
        if not context.has_table(table):
            return 0
        if self._estimator is None:
            return None
        if table not in self._cache:
            try:
                self._cache[table] = self._estimator(table)
            except Exception:  # pragma: no cover
                logger.warning("Row count estimate for %s failed; assuming unknown size", table, exc_info=True)
                self._cache[table] = None
        return self._cache[table]

    def _is_empty(self, table: str, context: SchemaModel) -> bool:
        return self.estimate(table, context) == 0

    def _is_large(self, table: str, context: SchemaModel) -> bool:
        estimate = self.estimate(table, context)
        return estimate is not None and estimate >= self._threshold

    def classify(self, op: ChangeOperation, context: SchemaModel) -> RiskTier:
        if isinstance(op, (DropTable, DropColumn)):
            return RiskTier.DATA_LOSS

        if isinstance(op, AddColumn):
            if op.column.nullable or op.column.has_default():
                return RiskTier.SAFE
            if self._is_empty(op.table, context):
                return RiskTier.SAFE
            return RiskTier.REQUIRES_BACKFILL

        if isinstance(op, AlterColumnType):
            return RiskTier.SAFE if is_widening(op.from_type, op.to_type) else RiskTier.DATA_LOSS

        if isinstance(op, AlterColumnNullability):
            if not op.tightens:
                return RiskTier.SAFE
            if self._is_empty(op.table, context):
                return RiskTier.SAFE
            return RiskTier.REQUIRES_BACKFILL

        if isinstance(op, AddConstraint):
            if op.constraint.kind is ConstraintKind.FOREIGN_KEY:
                return RiskTier.SAFE
            return RiskTier.LOCKING if self._is_large(op.table, context) else RiskTier.SAFE

        if isinstance(op, AddIndex):
            return RiskTier.LOCKING if self._is_large(op.table, context) else RiskTier.SAFE

        if isinstance(op, AlterEnumValues):
            return RiskTier.DATA_LOSS if op.removed_values else RiskTier.SAFE

        return RiskTier.SAFE

    def classify_all(self, ops, context: SchemaModel) -> tuple[ClassifiedOperation, ...]:
        """Classify a diff against the model it was computed from.

        Renamed tables are estimated under their pre-migration name since the live
        database still carries that name when the plan is built.
        """

        aliases: dict[str, str] = {}
        classified = []
        for op in ops:
            if isinstance(op, RenameTable):
                aliases[op.new_name] = aliases.get(op.old_name, op.old_name)
            tier = self.classify(_with_table_alias(op, aliases), context)
            classified.append(ClassifiedOperation(operation=op, tier=tier))
        return tuple(classified)


def classify(
    op: ChangeOperation,
    context: SchemaModel,
    *,
    row_estimates: Optional[Mapping[str, int]] = None,
    large_table_threshold: int = 1_000_000,
) -> RiskTier:
    estimator = row_estimates.get if row_estimates is not None else None
    return RiskClassifier(
        row_count_estimator=estimator,
        large_table_threshold=large_table_threshold,
    ).classify(op, context)


__all__ = ["ClassifiedOperation", "RiskClassifier", "RiskTier", "classify", "is_widening"]
