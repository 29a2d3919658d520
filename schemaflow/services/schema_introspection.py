"""Build a schema model snapshot of a live database with the SQLAlchemy inspector."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from sqlalchemy import inspect
from sqlalchemy import types as sqltypes
from sqlalchemy.engine import Engine

from schemaflow.constants.column_types import POSTGRES_TYPE_MAPPING, SQLITE_TYPE_MAPPING
from schemaflow.services.schema_model import (
    ColumnDef,
    ColumnType,
    ConstraintDef,
    ConstraintKind,
    EnumDef,
    IndexDef,
    OnDeletePolicy,
    ScalarType,
    SchemaModel,
    TableDef,
)

logger = logging.getLogger(__name__)

LEDGER_TABLES = frozenset(
    {
        "alembic_version",
        "drift_acknowledgements",
        "migration_locks",
        "migration_records",
        "migration_resolutions",
    }
)

_CAST_SUFFIX = re.compile(r"::[A-Za-z_][\w ]*(\[\])?$")
_GENERATED_DEFAULTS = {"current_timestamp", "now()", "gen_random_uuid()"}


def _scalar_for(sql_type: sqltypes.TypeEngine) -> ColumnType:
    if isinstance(sql_type, sqltypes.Enum) and getattr(sql_type, "name", None):
        return ColumnType(ScalarType.ENUM_REF, sql_type.name)
    if isinstance(sql_type, sqltypes.BigInteger):
        return ColumnType(ScalarType.BIGINT)
    if isinstance(sql_type, sqltypes.Integer):
        return ColumnType(ScalarType.INTEGER)
    if isinstance(sql_type, (sqltypes.Float, sqltypes.Numeric)):
        return ColumnType(ScalarType.FLOAT)
    if isinstance(sql_type, sqltypes.Boolean):
        return ColumnType(ScalarType.BOOLEAN)
    if isinstance(sql_type, (sqltypes.DateTime, sqltypes.TIMESTAMP)):
        return ColumnType(ScalarType.TIMESTAMP)
    if isinstance(sql_type, sqltypes.Uuid):
        return ColumnType(ScalarType.UUID)
    if isinstance(sql_type, sqltypes.JSON):
        return ColumnType(ScalarType.JSON)
    if not isinstance(sql_type, sqltypes.String):
        logger.warning("Treating unrecognised column type %r as text", sql_type)
    return ColumnType(ScalarType.TEXT)


def normalize_default(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    while text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()
    return _CAST_SUFFIX.sub("", text).strip()


def _storage_type(column_type: ColumnType, dialect: str) -> str:
    if column_type.scalar is ScalarType.ENUM_REF:
        return SQLITE_TYPE_MAPPING["enum"] if dialect == "sqlite" else f"enum:{column_type.enum_name}"
    mapping = SQLITE_TYPE_MAPPING if dialect == "sqlite" else POSTGRES_TYPE_MAPPING
    return mapping[column_type.scalar.value]


def _reconcile_column(actual: ColumnDef, expected: ColumnDef, dialect: str, in_primary_key: bool) -> ColumnDef:
    """Resolve details the database stores lossily back to the declared form."""

    column_type = actual.type
    if column_type != expected.type and _storage_type(column_type, dialect) == _storage_type(expected.type, dialect):
        column_type = expected.type

    nullable = actual.nullable
    if in_primary_key and expected.nullable and not actual.nullable:
        nullable = True

    default, generated = actual.default, actual.generated
    if expected.generated and not generated:
        if default is None or default.lower() in _GENERATED_DEFAULTS:
            default, generated = None, True
    if default is not None and expected.default is not None:
        if normalize_default(default) == normalize_default(expected.default):
            default = expected.default

    return ColumnDef(
        name=actual.name,
        type=column_type,
        nullable=nullable,
        default=default,
        generated=generated,
    )


def _column(info: dict) -> ColumnDef:
    default = info.get("default")
    generated = bool(info.get("identity")) or bool(default and str(default).startswith("nextval("))
    return ColumnDef(
        name=info["name"],
        type=_scalar_for(info["type"]),
        nullable=bool(info.get("nullable", True)),
        default=None if generated or default is None else normalize_default(str(default)),
        generated=generated,
    )


def _on_delete(options: dict) -> OnDeletePolicy:
    value = (options or {}).get("ondelete")
    if not value:
        return OnDeletePolicy.NO_ACTION
    try:
        return OnDeletePolicy(value.lower())
    except ValueError:
        logger.warning("Unrecognised ON DELETE policy %s; treating as no action", value)
        return OnDeletePolicy.NO_ACTION


def _safe(call, default):
    try:
        return call()
    except NotImplementedError:
        return default


def _table(inspector, name: str, schema: Optional[str]) -> TableDef:
    columns = tuple(_column(info) for info in inspector.get_columns(name, schema=schema))
    constraints: list[ConstraintDef] = []

    pk = inspector.get_pk_constraint(name, schema=schema) or {}
    if pk.get("constrained_columns"):
        constraints.append(
            ConstraintDef(ConstraintKind.PRIMARY_KEY, tuple(pk["constrained_columns"]), name=pk.get("name"))
        )
    for unique in _safe(lambda: inspector.get_unique_constraints(name, schema=schema), []):
        constraints.append(ConstraintDef(ConstraintKind.UNIQUE, tuple(unique["column_names"]), name=unique.get("name")))
    for check in _safe(lambda: inspector.get_check_constraints(name, schema=schema), []):
        constraints.append(
            ConstraintDef(ConstraintKind.CHECK, expression=normalize_default(check["sqltext"]), name=check.get("name"))
        )
    for fk in inspector.get_foreign_keys(name, schema=schema):
        constraints.append(
            ConstraintDef(
                ConstraintKind.FOREIGN_KEY,
                tuple(fk["constrained_columns"]),
                references_table=fk["referred_table"],
                references_columns=tuple(fk["referred_columns"]),
                on_delete=_on_delete(fk.get("options")),
                name=fk.get("name"),
            )
        )

    unique_names = {c.name for c in constraints if c.kind is ConstraintKind.UNIQUE and c.name}
    indexes: list[IndexDef] = []
    for index in inspector.get_indexes(name, schema=schema):
        # Unique constraints are also reported as indexes on some backends.
        if index.get("name") in unique_names or index.get("duplicates_constraint"):
            continue
        column_names = tuple(column for column in index.get("column_names") or () if column)
        if not column_names:
            continue
        predicate = (index.get("dialect_options") or {}).get("postgresql_where") or (
            index.get("dialect_options") or {}
        ).get("sqlite_where")
        indexes.append(
            IndexDef(
                columns=column_names,
                unique=bool(index.get("unique")),
                predicate=normalize_default(str(predicate)) if predicate is not None else None,
                name=index.get("name"),
            )
        )

    return TableDef(name=name, columns=columns, constraints=tuple(constraints), indexes=tuple(indexes))


def introspect(
    engine: Engine,
    *,
    exclude: Iterable[str] = LEDGER_TABLES,
    schema: Optional[str] = None,
    reference: Optional[SchemaModel] = None,
) -> SchemaModel:
    """Snapshot the live schema.

    ``reference`` is the model the database is expected to match; where the live
    column is a lossy storage of the declared one (uuid stored as TEXT on SQLite,
    casts on defaults) the declared form is kept so only real drift remains.
    """

    inspector = inspect(engine)
    dialect = engine.dialect.name
    excluded = set(exclude)

    enums: list[EnumDef] = []
    if hasattr(inspector, "get_enums"):
        for info in inspector.get_enums(schema=schema or "public"):
            enums.append(EnumDef(name=info["name"], values=tuple(info.get("labels") or ())))

    tables: list[TableDef] = []
    for name in sorted(inspector.get_table_names(schema=schema)):
        if name in excluded:
            continue
        table = _table(inspector, name, schema)
        if reference is not None and reference.has_table(name):
            expected = reference.table(name)
            pk_columns = set(table.primary_key.columns) if table.primary_key else set()
            table = TableDef(
                name=table.name,
                columns=tuple(
                    _reconcile_column(column, expected.column(column.name), dialect, column.name in pk_columns)
                    if expected.column(column.name) is not None
                    else column
                    for column in table.columns
                ),
                constraints=table.constraints,
                indexes=table.indexes,
            )
        tables.append(table)

    if reference is not None and dialect == "sqlite":
        # SQLite has no enum types; carry the declared ones so enum columns still resolve.
        enums = list(reference.enums)

    return SchemaModel(tables=tuple(tables), enums=tuple(enums))


__all__ = ["LEDGER_TABLES", "introspect", "normalize_default"]
