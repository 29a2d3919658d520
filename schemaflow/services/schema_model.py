"""Typed, immutable representation of a relational schema."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, Optional

from schemaflow.constants.column_types import MAX_IDENTIFIER_LENGTH
from schemaflow.services.migration_errors import SemanticError


class ScalarType(str, Enum):
    INTEGER = "integer"
    BIGINT = "bigint"
    FLOAT = "float"
    BOOLEAN = "boolean"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    UUID = "uuid"
    JSON = "json"
    ENUM_REF = "enum"


class ConstraintKind(str, Enum):
    PRIMARY_KEY = "primary-key"
    UNIQUE = "unique"
    FOREIGN_KEY = "foreign-key"
    CHECK = "check"


class OnDeletePolicy(str, Enum):
    RESTRICT = "restrict"
    CASCADE = "cascade"
    SET_NULL = "set null"
    NO_ACTION = "no action"


_CONSTRAINT_RANK = {
    ConstraintKind.PRIMARY_KEY: 0,
    ConstraintKind.UNIQUE: 1,
    ConstraintKind.CHECK: 2,
    ConstraintKind.FOREIGN_KEY: 3,
}


def short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]


def bounded_identifier(base: str, suffix: str) -> str:
    candidate = f"{base}_{suffix}"
    if len(candidate) <= MAX_IDENTIFIER_LENGTH:
        return candidate
    digest = short_hash(candidate)
    keep = MAX_IDENTIFIER_LENGTH - len(suffix) - len(digest) - 2
    return f"{base[:keep].rstrip('_')}_{digest}_{suffix}"


def _column_list(columns: Iterable[str]) -> str:
    return ", ".join(columns)


@dataclass(frozen=True)
class ColumnType:
    scalar: ScalarType
    enum_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.scalar, ScalarType):
            object.__setattr__(self, "scalar", ScalarType(self.scalar))
        if self.scalar is ScalarType.ENUM_REF and not self.enum_name:
            raise SemanticError("enum-ref column types must name an enum")
        if self.scalar is not ScalarType.ENUM_REF and self.enum_name is not None:
            raise SemanticError(f"{self.scalar.value} column types cannot reference an enum")

    def __str__(self) -> str:
        if self.scalar is ScalarType.ENUM_REF:
            return f"enum({self.enum_name})"
        return self.scalar.value

    @classmethod
    def from_text(cls, value: str) -> "ColumnType":
        text = value.strip()
        if text.startswith("enum(") and text.endswith(")"):
            return cls(ScalarType.ENUM_REF, text[5:-1].strip())
        return cls(ScalarType(text))


@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: ColumnType
    nullable: bool = True
    default: Optional[str] = None
    generated: bool = False
    previous_name: Optional[str] = None

    def structural_key(self) -> tuple:
        return (self.name, str(self.type), self.nullable, self.default, self.generated)

    def has_default(self) -> bool:
        return self.default is not None or self.generated

    def to_source(self) -> str:
        parts = [self.name, str(self.type)]
        if not self.nullable:
            parts.append("not null")
        if self.default is not None:
            parts.append(f"default ({self.default})")
        if self.generated:
            parts.append("generated")
        if self.previous_name:
            parts.append(f"was {self.previous_name}")
        return " ".join(parts)

    def to_payload(self) -> dict:
        return {
            "name": self.name,
            "type": str(self.type),
            "nullable": self.nullable,
            "default": self.default,
            "generated": self.generated,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "ColumnDef":
        return cls(
            name=payload["name"],
            type=ColumnType.from_text(payload["type"]),
            nullable=bool(payload.get("nullable", True)),
            default=payload.get("default"),
            generated=bool(payload.get("generated", False)),
        )


@dataclass(frozen=True)
class ConstraintDef:
    kind: ConstraintKind
    columns: tuple[str, ...] = ()
    references_table: Optional[str] = None
    references_columns: tuple[str, ...] = ()
    on_delete: Optional[OnDeletePolicy] = None
    expression: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ConstraintKind):
            object.__setattr__(self, "kind", ConstraintKind(self.kind))
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "references_columns", tuple(self.references_columns))
        if self.kind is ConstraintKind.FOREIGN_KEY:
            if self.on_delete is None:
                object.__setattr__(self, "on_delete", OnDeletePolicy.NO_ACTION)
            elif not isinstance(self.on_delete, OnDeletePolicy):
                object.__setattr__(self, "on_delete", OnDeletePolicy(self.on_delete))

    def structural_key(self) -> tuple:
        return (
            self.kind.value,
            self.columns,
            self.references_table,
            self.references_columns,
            self.on_delete.value if self.on_delete else None,
            self.expression,
        )

    def sort_key(self) -> tuple:
        return (_CONSTRAINT_RANK[self.kind], self.to_source(include_name=False))

    def effective_name(self, table: str) -> str:
        if self.name:
            return self.name
        if self.kind is ConstraintKind.PRIMARY_KEY:
            return bounded_identifier(table, "pkey")
        if self.kind is ConstraintKind.UNIQUE:
            return bounded_identifier(f"{table}_{'_'.join(self.columns)}", "key")
        if self.kind is ConstraintKind.FOREIGN_KEY:
            return bounded_identifier(f"{table}_{'_'.join(self.columns)}", "fkey")
        return bounded_identifier(f"{table}_{short_hash(self.expression or '')}", "check")

    def to_source(self, include_name: bool = True) -> str:
        if self.kind is ConstraintKind.PRIMARY_KEY:
            text = f"primary key ({_column_list(self.columns)})"
        elif self.kind is ConstraintKind.UNIQUE:
            text = f"unique ({_column_list(self.columns)})"
        elif self.kind is ConstraintKind.FOREIGN_KEY:
            text = (
                f"foreign key ({_column_list(self.columns)}) references {self.references_table} "
                f"({_column_list(self.references_columns)}) on delete {self.on_delete.value}"
            )
        else:
            text = f"check ({self.expression})"
        if include_name and self.name:
            text = f"{text} as {self.name}"
        return text

    def to_payload(self) -> dict:
        payload: dict = {"kind": self.kind.value, "columns": list(self.columns)}
        if self.kind is ConstraintKind.FOREIGN_KEY:
            payload["references_table"] = self.references_table
            payload["references_columns"] = list(self.references_columns)
            payload["on_delete"] = self.on_delete.value
        if self.kind is ConstraintKind.CHECK:
            payload["expression"] = self.expression
        if self.name:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "ConstraintDef":
        return cls(
            kind=ConstraintKind(payload["kind"]),
            columns=tuple(payload.get("columns") or ()),
            references_table=payload.get("references_table"),
            references_columns=tuple(payload.get("references_columns") or ()),
            on_delete=payload.get("on_delete"),
            expression=payload.get("expression"),
            name=payload.get("name"),
        )


@dataclass(frozen=True)
class IndexDef:
    columns: tuple[str, ...]
    unique: bool = False
    predicate: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))

    def structural_key(self) -> tuple:
        return (self.columns, self.unique, self.predicate)

    def sort_key(self) -> str:
        return self.to_source(include_name=False)

    def effective_name(self, table: str) -> str:
        if self.name:
            return self.name
        base = f"{table}_{'_'.join(self.columns)}"
        if self.predicate:
            base = f"{base}_{short_hash(self.predicate)}"
        return bounded_identifier(base, "uidx" if self.unique else "idx")

    def to_source(self, include_name: bool = True) -> str:
        text = f"index ({_column_list(self.columns)})"
        if self.unique:
            text = f"unique {text}"
        if self.predicate:
            text = f"{text} where ({self.predicate})"
        if include_name and self.name:
            text = f"{text} as {self.name}"
        return text

    def to_payload(self) -> dict:
        payload: dict = {"columns": list(self.columns), "unique": self.unique}
        if self.predicate:
            payload["predicate"] = self.predicate
        if self.name:
            payload["name"] = self.name
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "IndexDef":
        return cls(
            columns=tuple(payload["columns"]),
            unique=bool(payload.get("unique", False)),
            predicate=payload.get("predicate"),
            name=payload.get("name"),
        )


@dataclass(frozen=True)
class TableDef:
    name: str
    columns: tuple[ColumnDef, ...] = ()
    constraints: tuple[ConstraintDef, ...] = ()
    indexes: tuple[IndexDef, ...] = ()
    previous_name: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "constraints", tuple(self.constraints))
        object.__setattr__(self, "indexes", tuple(self.indexes))

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    @property
    def primary_key(self) -> Optional[ConstraintDef]:
        for constraint in self.constraints:
            if constraint.kind is ConstraintKind.PRIMARY_KEY:
                return constraint
        return None

    def column(self, name: str) -> Optional[ColumnDef]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def find_constraint(self, constraint: ConstraintDef) -> Optional[ConstraintDef]:
        key = constraint.structural_key()
        for existing in self.constraints:
            if existing.structural_key() == key:
                return existing
        return None

    def find_index(self, index: IndexDef) -> Optional[IndexDef]:
        key = index.structural_key()
        for existing in self.indexes:
            if existing.structural_key() == key:
                return existing
        return None

    def with_column(self, column: ColumnDef) -> "TableDef":
        return replace(self, columns=self.columns + (column,))

    def without_column(self, name: str) -> "TableDef":
        return replace(self, columns=tuple(c for c in self.columns if c.name != name))

    def replace_column(self, name: str, column: ColumnDef) -> "TableDef":
        return replace(self, columns=tuple(column if c.name == name else c for c in self.columns))

    def with_constraint(self, constraint: ConstraintDef) -> "TableDef":
        return replace(self, constraints=self.constraints + (constraint,))

    def without_constraint(self, constraint: ConstraintDef) -> "TableDef":
        key = constraint.structural_key()
        return replace(
            self,
            constraints=tuple(c for c in self.constraints if c.structural_key() != key),
        )

    def with_index(self, index: IndexDef) -> "TableDef":
        return replace(self, indexes=self.indexes + (index,))

    def without_index(self, index: IndexDef) -> "TableDef":
        key = index.structural_key()
        return replace(self, indexes=tuple(i for i in self.indexes if i.structural_key() != key))

    def freeze_object_names(self, columns: Optional[Iterable[str]] = None) -> "TableDef":
        """Pin derived constraint/index names before the inputs to the derivation change.

        When ``columns`` is given only objects covering one of those columns are pinned.
        """

        touched = set(columns) if columns is not None else None

        def _applies(object_columns: tuple[str, ...]) -> bool:
            return touched is None or bool(touched.intersection(object_columns))

        constraints = tuple(
            replace(c, name=c.effective_name(self.name)) if not c.name and _applies(c.columns) else c
            for c in self.constraints
        )
        indexes = tuple(
            replace(i, name=i.effective_name(self.name)) if not i.name and _applies(i.columns) else i
            for i in self.indexes
        )
        return replace(self, constraints=constraints, indexes=indexes)

    def structural_key(self) -> tuple:
        return (
            self.name,
            frozenset(column.structural_key() for column in self.columns),
            frozenset(constraint.structural_key() for constraint in self.constraints),
            frozenset(index.structural_key() for index in self.indexes),
        )

    def to_payload(self) -> dict:
        return {
            "name": self.name,
            "columns": [column.to_payload() for column in self.columns],
            "constraints": [c.to_payload() for c in sorted(self.constraints, key=ConstraintDef.sort_key)],
            "indexes": [i.to_payload() for i in sorted(self.indexes, key=IndexDef.sort_key)],
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "TableDef":
        return cls(
            name=payload["name"],
            columns=tuple(ColumnDef.from_payload(item) for item in payload.get("columns", ())),
            constraints=tuple(ConstraintDef.from_payload(item) for item in payload.get("constraints", ())),
            indexes=tuple(IndexDef.from_payload(item) for item in payload.get("indexes", ())),
        )


@dataclass(frozen=True)
class EnumDef:
    name: str
    values: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", tuple(self.values))

    def structural_key(self) -> tuple:
        return (self.name, self.values)

    def to_payload(self) -> dict:
        return {"name": self.name, "values": list(self.values)}

    @classmethod
    def from_payload(cls, payload: dict) -> "EnumDef":
        return cls(name=payload["name"], values=tuple(payload.get("values", ())))


@dataclass(frozen=True)
class SchemaModel:
    """Ordered collection of tables and enums; every mutator returns a new model."""

    tables: tuple[TableDef, ...] = ()
    enums: tuple[EnumDef, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "tables", tuple(self.tables))
        object.__setattr__(self, "enums", tuple(self.enums))

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(table.name for table in self.tables)

    @property
    def enum_names(self) -> tuple[str, ...]:
        return tuple(enum.name for enum in self.enums)

    def has_table(self, name: str) -> bool:
        return any(table.name == name for table in self.tables)

    def table(self, name: str) -> TableDef:
        for table in self.tables:
            if table.name == name:
                return table
        raise SemanticError(f"Table '{name}' does not exist")

    def has_enum(self, name: str) -> bool:
        return any(enum.name == name for enum in self.enums)

    def enum(self, name: str) -> EnumDef:
        for enum in self.enums:
            if enum.name == name:
                return enum
        raise SemanticError(f"Enum '{name}' does not exist")

    def with_table(self, table: TableDef) -> "SchemaModel":
        return replace(self, tables=self.tables + (table,))

    def without_table(self, name: str) -> "SchemaModel":
        return replace(self, tables=tuple(t for t in self.tables if t.name != name))

    def replace_table(self, name: str, table: TableDef) -> "SchemaModel":
        return replace(self, tables=tuple(table if t.name == name else t for t in self.tables))

    def with_enum(self, enum: EnumDef) -> "SchemaModel":
        return replace(self, enums=self.enums + (enum,))

    def without_enum(self, name: str) -> "SchemaModel":
        return replace(self, enums=tuple(e for e in self.enums if e.name != name))

    def replace_enum(self, name: str, enum: EnumDef) -> "SchemaModel":
        return replace(self, enums=tuple(enum if e.name == name else e for e in self.enums))

    def strip_rename_annotations(self) -> "SchemaModel":
        tables = tuple(
            replace(
                table,
                previous_name=None,
                columns=tuple(replace(column, previous_name=None) for column in table.columns),
            )
            for table in self.tables
        )
        return replace(self, tables=tables)

    def without_object_names(self) -> "SchemaModel":
        tables = tuple(
            replace(
                table,
                constraints=tuple(replace(c, name=None) for c in table.constraints),
                indexes=tuple(replace(i, name=None) for i in table.indexes),
            )
            for table in self.tables
        )
        return replace(self, tables=tables)

    def structural_key(self) -> tuple:
        return (
            frozenset(table.structural_key() for table in self.tables),
            frozenset(enum.structural_key() for enum in self.enums),
        )

    def structurally_equal(self, other: "SchemaModel") -> bool:
        return self.structural_key() == other.structural_key()

    def validate(self) -> "SchemaModel":
        """Check referential integrity within the model; returns self for chaining."""

        seen_enums: set[str] = set()
        for enum in self.enums:
            if enum.name in seen_enums:
                raise SemanticError(f"Enum '{enum.name}' is declared more than once")
            seen_enums.add(enum.name)
            if not enum.values:
                raise SemanticError(f"Enum '{enum.name}' must declare at least one value")
            if len(set(enum.values)) != len(enum.values):
                raise SemanticError(f"Enum '{enum.name}' declares duplicate values")

        seen_tables: set[str] = set()
        for table in self.tables:
            if table.name in seen_tables:
                raise SemanticError(f"Table '{table.name}' is declared more than once")
            seen_tables.add(table.name)
            self._validate_table(table)
        return self

    def _validate_table(self, table: TableDef) -> None:
        names = table.column_names
        if len(set(names)) != len(names):
            raise SemanticError(f"Table '{table.name}' declares duplicate column names")
        if not names:
            raise SemanticError(f"Table '{table.name}' must declare at least one column")

        for column in table.columns:
            if column.type.scalar is ScalarType.ENUM_REF and not self.has_enum(column.type.enum_name):
                raise SemanticError(
                    f"Column '{table.name}.{column.name}' references unknown enum '{column.type.enum_name}'"
                )

        primary_keys = [c for c in table.constraints if c.kind is ConstraintKind.PRIMARY_KEY]
        if len(primary_keys) != 1:
            raise SemanticError(
                f"Table '{table.name}' must declare exactly one primary key (found {len(primary_keys)})"
            )

        seen_keys: set[tuple] = set()
        for constraint in table.constraints:
            key = constraint.structural_key()
            if key in seen_keys:
                raise SemanticError(f"Table '{table.name}' declares a duplicate constraint: {constraint.to_source()}")
            seen_keys.add(key)
            self._validate_constraint(table, constraint)

        seen_index_keys: set[tuple] = set()
        for index in table.indexes:
            if not index.columns:
                raise SemanticError(f"Index on '{table.name}' must list at least one column")
            for column_name in index.columns:
                if table.column(column_name) is None:
                    raise SemanticError(f"Index on '{table.name}' references unknown column '{column_name}'")
            if index.structural_key() in seen_index_keys:
                raise SemanticError(f"Table '{table.name}' declares a duplicate index: {index.to_source()}")
            seen_index_keys.add(index.structural_key())

    def _validate_constraint(self, table: TableDef, constraint: ConstraintDef) -> None:
        if constraint.kind is ConstraintKind.CHECK:
            if not constraint.expression:
                raise SemanticError(f"Check constraint on '{table.name}' needs an expression")
            return

        if not constraint.columns:
            raise SemanticError(f"Constraint on '{table.name}' must list at least one column")
        for column_name in constraint.columns:
            if table.column(column_name) is None:
                raise SemanticError(f"Constraint on '{table.name}' references unknown column '{column_name}'")

        if constraint.kind is not ConstraintKind.FOREIGN_KEY:
            return

        if not constraint.references_table or not self.has_table(constraint.references_table):
            raise SemanticError(
                f"Foreign key on '{table.name}' references unknown table '{constraint.references_table}'"
            )
        referenced = self.table(constraint.references_table)
        if len(constraint.references_columns) != len(constraint.columns):
            raise SemanticError(
                f"Foreign key on '{table.name}' lists {len(constraint.columns)} columns but references "
                f"{len(constraint.references_columns)}"
            )
        for column_name in constraint.references_columns:
            if referenced.column(column_name) is None:
                raise SemanticError(
                    f"Foreign key on '{table.name}' references unknown column "
                    f"'{referenced.name}.{column_name}'"
                )
        if constraint.on_delete is OnDeletePolicy.SET_NULL:
            for column_name in constraint.columns:
                if not table.column(column_name).nullable:
                    raise SemanticError(
                        f"Foreign key on '{table.name}' uses ON DELETE SET NULL but '{column_name}' is not nullable"
                    )


EMPTY_MODEL = SchemaModel()
