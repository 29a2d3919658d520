"""Compare two schema models and emit dependency-ordered change operations."""

from __future__ import annotations

from dataclasses import replace
from typing import List

from schemaflow.services.change_operations import (
    AddColumn,
    AddConstraint,
    AddIndex,
    AlterColumnDefault,
    AlterColumnNullability,
    AlterColumnType,
    AlterEnumValues,
    ChangeOperation,
    CreateEnum,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropEnum,
    DropIndex,
    DropTable,
    RenameColumn,
    RenameTable,
    apply_operations,
)
from schemaflow.services.schema_model import (
    ConstraintDef,
    ConstraintKind,
    IndexDef,
    SchemaModel,
    TableDef,
)


def _table_renames(old: SchemaModel, new: SchemaModel) -> List[RenameTable]:
    renames: List[RenameTable] = []
    claimed: set[str] = set()
    for table in new.tables:
        previous = table.previous_name
        if not previous or previous == table.name or previous in claimed:
            continue
        # Annotations that no longer match the old model (already applied) are ignored.
        if old.has_table(previous) and not old.has_table(table.name) and not new.has_table(previous):
            renames.append(RenameTable(old_name=previous, new_name=table.name))
            claimed.add(previous)
    return renames


def _column_renames(old: SchemaModel, new: SchemaModel) -> List[RenameColumn]:
    renames: List[RenameColumn] = []
    for table in new.tables:
        if not old.has_table(table.name):
            continue
        old_table = old.table(table.name)
        claimed: set[str] = set()
        for column in table.columns:
            previous = column.previous_name
            if not previous or previous == column.name or previous in claimed:
                continue
            if (
                old_table.column(previous) is not None
                and old_table.column(column.name) is None
                and table.column(previous) is None
            ):
                renames.append(RenameColumn(table=table.name, old_name=previous, new_name=column.name))
                claimed.add(previous)
    return renames


def _strip_table(table: TableDef) -> TableDef:
    return replace(
        table,
        previous_name=None,
        columns=tuple(replace(column, previous_name=None) for column in table.columns),
    )


def _sorted_constraints(constraints) -> List[ConstraintDef]:
    return sorted(constraints, key=ConstraintDef.sort_key)


def _sorted_indexes(indexes) -> List[IndexDef]:
    return sorted(indexes, key=IndexDef.sort_key)


def diff(old: SchemaModel, new: SchemaModel) -> tuple[ChangeOperation, ...]:
    """Return the operations that transform ``old`` into ``new``.

    Renames are only emitted for explicit ``was`` annotations. Constraints and
    indexes are matched structurally, never by name, so a changed constraint is
    always a drop followed by an add.
    """

    ops: List[ChangeOperation] = []

    # Enums that columns may reference must exist before any table work.
    for enum in new.enums:
        if not old.has_enum(enum.name):
            ops.append(CreateEnum(enum=enum))
    for enum in new.enums:
        if old.has_enum(enum.name) and old.enum(enum.name).values != enum.values:
            ops.append(
                AlterEnumValues(name=enum.name, old_values=old.enum(enum.name).values, new_values=enum.values)
            )

    table_renames = _table_renames(old, new)
    working = apply_operations(old, table_renames)
    column_renames = _column_renames(working, new)
    working = apply_operations(working, column_renames)
    ops.extend(table_renames)
    ops.extend(column_renames)

    dropped = [table for table in working.tables if not new.has_table(table.name)]
    created = [table for table in new.tables if not working.has_table(table.name)]
    surviving = [(working.table(table.name), table) for table in new.tables if working.has_table(table.name)]

    # Foreign keys go first so referenced keys and whole tables can be dropped.
    fk_drops: List[ChangeOperation] = []
    index_drops: List[ChangeOperation] = []
    constraint_drops: List[ChangeOperation] = []
    for old_table, new_table in surviving:
        for index in _sorted_indexes(old_table.indexes):
            if new_table.find_index(index) is None:
                index_drops.append(DropIndex(table=old_table.name, index=index))
        for constraint in _sorted_constraints(old_table.constraints):
            if new_table.find_constraint(constraint) is not None:
                continue
            target = fk_drops if constraint.kind is ConstraintKind.FOREIGN_KEY else constraint_drops
            target.append(DropConstraint(table=old_table.name, constraint=constraint))
    for table in dropped:
        for constraint in _sorted_constraints(table.constraints):
            if constraint.kind is ConstraintKind.FOREIGN_KEY:
                fk_drops.append(DropConstraint(table=table.name, constraint=constraint))
    ops.extend(fk_drops)
    ops.extend(index_drops)
    ops.extend(constraint_drops)

    for old_table, new_table in surviving:
        for column in old_table.columns:
            if new_table.column(column.name) is None:
                ops.append(DropColumn(table=old_table.name, column=column))

    for table in dropped:
        remaining = tuple(c for c in table.constraints if c.kind is not ConstraintKind.FOREIGN_KEY)
        ops.append(DropTable(table=replace(table, constraints=remaining)))

    for table in created:
        stripped = _strip_table(table)
        ops.append(
            CreateTable(
                table=replace(
                    stripped,
                    constraints=tuple(c for c in stripped.constraints if c.kind is ConstraintKind.PRIMARY_KEY),
                    indexes=(),
                )
            )
        )

    for old_table, new_table in surviving:
        for column in new_table.columns:
            if old_table.column(column.name) is None:
                ops.append(AddColumn(table=new_table.name, column=replace(column, previous_name=None)))

    for old_table, new_table in surviving:
        for column in new_table.columns:
            before = old_table.column(column.name)
            if before is None:
                continue
            if before.type != column.type:
                ops.append(
                    AlterColumnType(
                        table=new_table.name,
                        column=column.name,
                        from_type=before.type,
                        to_type=column.type,
                    )
                )
            if before.nullable != column.nullable:
                ops.append(
                    AlterColumnNullability(
                        table=new_table.name,
                        column=column.name,
                        nullable=column.nullable,
                        previously_nullable=before.nullable,
                    )
                )
            if before.default != column.default or before.generated != column.generated:
                ops.append(
                    AlterColumnDefault(
                        table=new_table.name,
                        column=column.name,
                        default=column.default,
                        previous_default=before.default,
                        generated=column.generated,
                        previously_generated=before.generated,
                    )
                )

    key_adds: List[ChangeOperation] = []
    fk_adds: List[ChangeOperation] = []
    index_adds: List[ChangeOperation] = []
    for table in new.tables:
        before = working.table(table.name) if working.has_table(table.name) else None
        for constraint in _sorted_constraints(table.constraints):
            if before is None and constraint.kind is ConstraintKind.PRIMARY_KEY:
                continue
            if before is not None and before.find_constraint(constraint) is not None:
                continue
            target = fk_adds if constraint.kind is ConstraintKind.FOREIGN_KEY else key_adds
            target.append(AddConstraint(table=table.name, constraint=constraint))
        for index in _sorted_indexes(table.indexes):
            if before is None or before.find_index(index) is None:
                index_adds.append(AddIndex(table=table.name, index=index))
    ops.extend(key_adds)
    ops.extend(fk_adds)
    ops.extend(index_adds)

    for enum in old.enums:
        if not new.has_enum(enum.name):
            ops.append(DropEnum(enum=enum))

    return tuple(ops)


__all__ = ["diff"]
