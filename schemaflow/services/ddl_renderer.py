"""Render change operations to SQL DDL statements."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Sequence

from schemaflow.constants.column_types import POSTGRES_TYPE_MAPPING, SQLITE_TYPE_MAPPING
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
)
from schemaflow.services.migration_errors import SemanticError
from schemaflow.services.schema_model import (
    ColumnDef,
    ColumnType,
    ConstraintDef,
    ConstraintKind,
    IndexDef,
    ScalarType,
    SchemaModel,
)


class Dialect(str, Enum):
    POSTGRESQL = "postgresql"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, value: "Dialect | str") -> "Dialect":
        if isinstance(value, Dialect):
            return value
        normalized = (value or "").strip().lower()
        if normalized in {"postgres", "postgresql", "psycopg", "psycopg2"}:
            return cls.POSTGRESQL
        if normalized == "sqlite":
            return cls.SQLITE
        raise SemanticError(f"Unsupported SQL dialect '{value}'")


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _column_list(columns) -> str:
    return ", ".join(quote_identifier(column) for column in columns)


def _sql_type(column_type: ColumnType, dialect: Dialect) -> str:
    if column_type.scalar is ScalarType.ENUM_REF:
        if dialect is Dialect.SQLITE:
            return SQLITE_TYPE_MAPPING["enum"]
        return quote_identifier(column_type.enum_name)
    mapping = SQLITE_TYPE_MAPPING if dialect is Dialect.SQLITE else POSTGRES_TYPE_MAPPING
    return mapping[column_type.scalar.value]


def _generated_clause(column: ColumnDef, dialect: Dialect) -> str:
    scalar = column.type.scalar
    if dialect is Dialect.SQLITE:
        # SQLite assigns INTEGER PRIMARY KEY values itself.
        if scalar in (ScalarType.INTEGER, ScalarType.BIGINT):
            return ""
        if scalar is ScalarType.TIMESTAMP:
            return "DEFAULT CURRENT_TIMESTAMP"
        raise SemanticError(f"SQLite cannot generate values for {scalar.value} column '{column.name}'")
    if scalar in (ScalarType.INTEGER, ScalarType.BIGINT):
        return "GENERATED BY DEFAULT AS IDENTITY"
    if scalar is ScalarType.UUID:
        return "DEFAULT gen_random_uuid()"
    if scalar is ScalarType.TIMESTAMP:
        return "DEFAULT CURRENT_TIMESTAMP"
    raise SemanticError(f"Cannot generate values for {scalar.value} column '{column.name}'")


def column_definition(column: ColumnDef, dialect: Dialect) -> str:
    parts = [quote_identifier(column.name), _sql_type(column.type, dialect)]
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default is not None:
        parts.append(f"DEFAULT ({column.default})")
    elif column.generated:
        clause = _generated_clause(column, dialect)
        if clause:
            parts.append(clause)
    return " ".join(parts)


def constraint_definition(table: str, constraint: ConstraintDef) -> str:
    name = quote_identifier(constraint.effective_name(table))
    if constraint.kind is ConstraintKind.PRIMARY_KEY:
        body = f"PRIMARY KEY ({_column_list(constraint.columns)})"
    elif constraint.kind is ConstraintKind.UNIQUE:
        body = f"UNIQUE ({_column_list(constraint.columns)})"
    elif constraint.kind is ConstraintKind.FOREIGN_KEY:
        body = (
            f"FOREIGN KEY ({_column_list(constraint.columns)}) "
            f"REFERENCES {quote_identifier(constraint.references_table)} "
            f"({_column_list(constraint.references_columns)}) "
            f"ON DELETE {constraint.on_delete.value.upper()}"
        )
    else:
        body = f"CHECK ({constraint.expression})"
    return f"CONSTRAINT {name} {body}"


def index_definition(table: str, index: IndexDef) -> str:
    statement = (
        f"CREATE {'UNIQUE ' if index.unique else ''}INDEX {quote_identifier(index.effective_name(table))} "
        f"ON {quote_identifier(table)} ({_column_list(index.columns)})"
    )
    if index.predicate:
        statement = f"{statement} WHERE {index.predicate}"
    return statement


def _unsupported(op: ChangeOperation, dialect: Dialect) -> SemanticError:
    return SemanticError(f"{op.kind} is not supported by the {dialect.value} dialect: {op.describe()}")


def _alter_table(table: str, clause: str) -> str:
    return f"ALTER TABLE {quote_identifier(table)} {clause}"


def _create_table(op: CreateTable, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    table = op.table
    elements = [column_definition(column, dialect) for column in table.columns]
    elements.extend(
        constraint_definition(table.name, constraint)
        for constraint in sorted(table.constraints, key=ConstraintDef.sort_key)
    )
    body = ",\n    ".join(elements)
    statements = [f"CREATE TABLE {quote_identifier(table.name)} (\n    {body}\n)"]
    statements.extend(index_definition(table.name, index) for index in sorted(table.indexes, key=IndexDef.sort_key))
    return statements


def _drop_table(op: DropTable, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [f"DROP TABLE {quote_identifier(op.table.name)}"]


def _add_column(op: AddColumn, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [_alter_table(op.table, f"ADD COLUMN {column_definition(op.column, dialect)}")]


def _drop_column(op: DropColumn, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [_alter_table(op.table, f"DROP COLUMN {quote_identifier(op.column.name)}")]


def _alter_column_type(op: AlterColumnType, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        raise _unsupported(op, dialect)
    target = _sql_type(op.to_type, dialect)
    column = quote_identifier(op.column)
    using = f"{column}::text::{target}" if op.to_type.scalar is ScalarType.ENUM_REF else f"{column}::{target}"
    return [_alter_table(op.table, f"ALTER COLUMN {column} TYPE {target} USING {using}")]


def _alter_column_nullability(
    op: AlterColumnNullability, dialect: Dialect, context: Optional[SchemaModel]
) -> list[str]:
    if dialect is Dialect.SQLITE:
        raise _unsupported(op, dialect)
    action = "DROP NOT NULL" if op.nullable else "SET NOT NULL"
    return [_alter_table(op.table, f"ALTER COLUMN {quote_identifier(op.column)} {action}")]


def _alter_column_default(op: AlterColumnDefault, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        raise _unsupported(op, dialect)
    column = quote_identifier(op.column)
    statements: list[str] = []
    if op.previously_generated and not op.generated:
        statements.append(_alter_table(op.table, f"ALTER COLUMN {column} DROP IDENTITY IF EXISTS"))
    if op.default is not None:
        statements.append(_alter_table(op.table, f"ALTER COLUMN {column} SET DEFAULT ({op.default})"))
    elif op.previous_default is not None:
        statements.append(_alter_table(op.table, f"ALTER COLUMN {column} DROP DEFAULT"))
    if op.generated and not op.previously_generated:
        statements.append(_alter_table(op.table, f"ALTER COLUMN {column} ADD GENERATED BY DEFAULT AS IDENTITY"))
    return statements


def _add_constraint(op: AddConstraint, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        raise _unsupported(op, dialect)
    return [_alter_table(op.table, f"ADD {constraint_definition(op.table, op.constraint)}")]


def _drop_constraint(op: DropConstraint, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        raise _unsupported(op, dialect)
    name = quote_identifier(op.constraint.effective_name(op.table))
    return [_alter_table(op.table, f"DROP CONSTRAINT {name}")]


def _add_index(op: AddIndex, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [index_definition(op.table, op.index)]


def _drop_index(op: DropIndex, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [f"DROP INDEX {quote_identifier(op.index.effective_name(op.table))}"]


def _rename_table(op: RenameTable, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [_alter_table(op.old_name, f"RENAME TO {quote_identifier(op.new_name)}")]


def _rename_column(op: RenameColumn, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    return [
        _alter_table(op.table, f"RENAME COLUMN {quote_identifier(op.old_name)} TO {quote_identifier(op.new_name)}")
    ]


def _create_enum(op: CreateEnum, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        return []
    values = ", ".join(quote_literal(value) for value in op.enum.values)
    return [f"CREATE TYPE {quote_identifier(op.enum.name)} AS ENUM ({values})"]


def _drop_enum(op: DropEnum, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        return []
    return [f"DROP TYPE {quote_identifier(op.enum.name)}"]


def _alter_enum_values(op: AlterEnumValues, dialect: Dialect, context: Optional[SchemaModel]) -> list[str]:
    if dialect is Dialect.SQLITE:
        return []
    enum = quote_identifier(op.name)

    if not op.removed_values and op.new_values[: len(op.old_values)] == op.old_values:
        return [f"ALTER TYPE {enum} ADD VALUE {quote_literal(value)}" for value in op.added_values]

    # Postgres cannot drop or reorder enum labels; rebuild the type and recast dependent columns.
    if context is None:
        raise SemanticError(f"Rebuilding enum '{op.name}' requires the current schema model")
    old_name = f"{op.name}__old"
    values = ", ".join(quote_literal(value) for value in op.new_values)
    statements = [
        f"ALTER TYPE {enum} RENAME TO {quote_identifier(old_name)}",
        f"CREATE TYPE {enum} AS ENUM ({values})",
    ]
    for table in context.tables:
        for column in table.columns:
            if column.type.scalar is ScalarType.ENUM_REF and column.type.enum_name == op.name:
                name = quote_identifier(column.name)
                statements.append(
                    _alter_table(table.name, f"ALTER COLUMN {name} TYPE {enum} USING {name}::text::{enum}")
                )
    statements.append(f"DROP TYPE {quote_identifier(old_name)}")
    return statements


_RENDERERS: dict[type, Callable[..., list[str]]] = {
    CreateTable: _create_table,
    DropTable: _drop_table,
    AddColumn: _add_column,
    DropColumn: _drop_column,
    AlterColumnType: _alter_column_type,
    AlterColumnNullability: _alter_column_nullability,
    AlterColumnDefault: _alter_column_default,
    AddConstraint: _add_constraint,
    DropConstraint: _drop_constraint,
    AddIndex: _add_index,
    DropIndex: _drop_index,
    RenameTable: _rename_table,
    RenameColumn: _rename_column,
    CreateEnum: _create_enum,
    DropEnum: _drop_enum,
    AlterEnumValues: _alter_enum_values,
}


def render(
    op: ChangeOperation,
    dialect: Dialect | str = Dialect.POSTGRESQL,
    *,
    context: Optional[SchemaModel] = None,
) -> list[str]:
    """Return the statements that perform ``op``.

    ``context`` is the schema as it stands just before ``op``; only enum rebuilds
    need it. Some operations render to no statements on SQLite (enum types).
    """

    renderer = _RENDERERS.get(type(op))
    if renderer is None:
        raise SemanticError(f"No DDL renderer for {type(op).__name__}")
    return renderer(op, Dialect.parse(dialect), context)


def render_unit(
    operations: Sequence[ChangeOperation],
    dialect: Dialect | str = Dialect.POSTGRESQL,
    *,
    context: Optional[SchemaModel] = None,
    start: int = 0,
) -> list[list[str]]:
    """Render ``operations[start:]`` as one statement list per operation.

    SQLite cannot add a constraint to an existing table, so constraints added to a
    table created earlier in the same unit are folded into its CREATE TABLE and the
    constraint operation itself renders to nothing. ``context`` is the schema just
    before ``operations[start]``.
    """

    dialect = Dialect.parse(dialect)
    folded: dict[int, list[ConstraintDef]] = {}
    absorbed: set[int] = set()
    if dialect is Dialect.SQLITE:
        created: dict[str, int] = {}
        for index, operation in enumerate(operations):
            if isinstance(operation, CreateTable):
                created[operation.table.name] = index
            elif isinstance(operation, (DropTable, RenameTable)):
                created.pop(operation.tables[0], None)
            elif isinstance(operation, AddConstraint) and operation.table in created:
                folded.setdefault(created[operation.table], []).append(operation.constraint)
                absorbed.add(index)

    statements: list[list[str]] = []
    for index in range(start, len(operations)):
        operation = operations[index]
        if index in absorbed:
            statements.append([])
        elif index in folded:
            table = operation.table
            for constraint in folded[index]:
                table = table.with_constraint(constraint)
            statements.append(render(CreateTable(table=table), dialect, context=context))
        else:
            statements.append(render(operation, dialect, context=context))
        if context is not None:
            context = operation.apply_to(context)
    return statements


__all__ = [
    "Dialect",
    "column_definition",
    "constraint_definition",
    "index_definition",
    "quote_identifier",
    "quote_literal",
    "render",
    "render_unit",
]
