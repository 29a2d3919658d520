"""Closed set of schema change operations produced by the differ."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, replace
from typing import ClassVar, Iterable, Optional, Union

from schemaflow.services.migration_errors import SemanticError
from schemaflow.services.schema_model import (
    ColumnDef,
    ColumnType,
    ConstraintDef,
    ConstraintKind,
    EnumDef,
    IndexDef,
    SchemaModel,
    TableDef,
)


def _require_table(model: SchemaModel, name: str, op: str) -> TableDef:
    if not model.has_table(name):
        raise SemanticError(f"{op}: table '{name}' does not exist")
    return model.table(name)


def _require_column(table: TableDef, name: str, op: str) -> ColumnDef:
    column = table.column(name)
    if column is None:
        raise SemanticError(f"{op}: column '{table.name}.{name}' does not exist")
    return column


@dataclass(frozen=True)
class CreateTable:
    kind: ClassVar[str] = "create_table"
    table: TableDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table.name,)

    def describe(self) -> str:
        return f"create table {self.table.name} ({', '.join(self.table.column_names)})"

    def describe_inverse(self) -> str:
        return f"drop table {self.table.name}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        if model.has_table(self.table.name):
            raise SemanticError(f"{self.kind}: table '{self.table.name}' already exists")
        return model.with_table(self.table)

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "CreateTable":
        return cls(table=TableDef.from_payload(payload["table"]))


@dataclass(frozen=True)
class DropTable:
    kind: ClassVar[str] = "drop_table"
    table: TableDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table.name,)

    def describe(self) -> str:
        return f"drop table {self.table.name}"

    def describe_inverse(self) -> str:
        return f"recreate table {self.table.name} ({', '.join(self.table.column_names)}); rows are not restored"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        _require_table(model, self.table.name, self.kind)
        return model.without_table(self.table.name)

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "DropTable":
        return cls(table=TableDef.from_payload(payload["table"]))


@dataclass(frozen=True)
class AddColumn:
    kind: ClassVar[str] = "add_column"
    table: str
    column: ColumnDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"add column {self.table}.{self.column.to_source()}"

    def describe_inverse(self) -> str:
        return f"drop column {self.table}.{self.column.name}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        if table.column(self.column.name) is not None:
            raise SemanticError(f"{self.kind}: column '{self.table}.{self.column.name}' already exists")
        return model.replace_table(self.table, table.with_column(self.column))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "column": self.column.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "AddColumn":
        return cls(table=payload["table"], column=ColumnDef.from_payload(payload["column"]))


@dataclass(frozen=True)
class DropColumn:
    kind: ClassVar[str] = "drop_column"
    table: str
    column: ColumnDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"drop column {self.table}.{self.column.name}"

    def describe_inverse(self) -> str:
        return f"re-add column {self.table}.{self.column.to_source()}; values are not restored"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        _require_column(table, self.column.name, self.kind)
        return model.replace_table(self.table, table.without_column(self.column.name))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "column": self.column.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "DropColumn":
        return cls(table=payload["table"], column=ColumnDef.from_payload(payload["column"]))


@dataclass(frozen=True)
class AlterColumnType:
    kind: ClassVar[str] = "alter_column_type"
    table: str
    column: str
    from_type: ColumnType
    to_type: ColumnType

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"alter column {self.table}.{self.column} type {self.from_type} -> {self.to_type}"

    def describe_inverse(self) -> str:
        return f"alter column {self.table}.{self.column} type {self.to_type} -> {self.from_type}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        column = _require_column(table, self.column, self.kind)
        return model.replace_table(self.table, table.replace_column(self.column, replace(column, type=self.to_type)))

    def to_payload(self) -> dict:
        return {
            "op": self.kind,
            "table": self.table,
            "column": self.column,
            "from_type": str(self.from_type),
            "to_type": str(self.to_type),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AlterColumnType":
        return cls(
            table=payload["table"],
            column=payload["column"],
            from_type=ColumnType.from_text(payload["from_type"]),
            to_type=ColumnType.from_text(payload["to_type"]),
        )


@dataclass(frozen=True)
class AlterColumnNullability:
    kind: ClassVar[str] = "alter_column_nullability"
    table: str
    column: str
    nullable: bool
    previously_nullable: bool

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    @property
    def tightens(self) -> bool:
        return self.previously_nullable and not self.nullable

    def describe(self) -> str:
        return f"alter column {self.table}.{self.column} {'drop' if self.nullable else 'set'} not null"

    def describe_inverse(self) -> str:
        return f"alter column {self.table}.{self.column} {'drop' if self.previously_nullable else 'set'} not null"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        column = _require_column(table, self.column, self.kind)
        return model.replace_table(
            self.table, table.replace_column(self.column, replace(column, nullable=self.nullable))
        )

    def to_payload(self) -> dict:
        return {
            "op": self.kind,
            "table": self.table,
            "column": self.column,
            "nullable": self.nullable,
            "previously_nullable": self.previously_nullable,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AlterColumnNullability":
        return cls(
            table=payload["table"],
            column=payload["column"],
            nullable=bool(payload["nullable"]),
            previously_nullable=bool(payload["previously_nullable"]),
        )


@dataclass(frozen=True)
class AlterColumnDefault:
    kind: ClassVar[str] = "alter_column_default"
    table: str
    column: str
    default: Optional[str]
    previous_default: Optional[str]
    generated: bool = False
    previously_generated: bool = False

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        target = "generated" if self.generated else (f"default ({self.default})" if self.default is not None else "no default")
        return f"alter column {self.table}.{self.column} set {target}"

    def describe_inverse(self) -> str:
        if self.previously_generated:
            target = "generated"
        elif self.previous_default is not None:
            target = f"default ({self.previous_default})"
        else:
            target = "no default"
        return f"alter column {self.table}.{self.column} set {target}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        column = _require_column(table, self.column, self.kind)
        updated = replace(column, default=self.default, generated=self.generated)
        return model.replace_table(self.table, table.replace_column(self.column, updated))

    def to_payload(self) -> dict:
        return {
            "op": self.kind,
            "table": self.table,
            "column": self.column,
            "default": self.default,
            "previous_default": self.previous_default,
            "generated": self.generated,
            "previously_generated": self.previously_generated,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AlterColumnDefault":
        return cls(
            table=payload["table"],
            column=payload["column"],
            default=payload.get("default"),
            previous_default=payload.get("previous_default"),
            generated=bool(payload.get("generated", False)),
            previously_generated=bool(payload.get("previously_generated", False)),
        )


@dataclass(frozen=True)
class AddConstraint:
    kind: ClassVar[str] = "add_constraint"
    table: str
    constraint: ConstraintDef

    @property
    def tables(self) -> tuple[str, ...]:
        if self.constraint.references_table and self.constraint.references_table != self.table:
            return (self.table, self.constraint.references_table)
        return (self.table,)

    def describe(self) -> str:
        return f"add constraint on {self.table}: {self.constraint.to_source()}"

    def describe_inverse(self) -> str:
        return f"drop constraint {self.constraint.effective_name(self.table)} on {self.table}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        if table.find_constraint(self.constraint) is not None:
            raise SemanticError(f"{self.kind}: {self.table} already has {self.constraint.to_source()}")
        if self.constraint.kind is ConstraintKind.PRIMARY_KEY and table.primary_key is not None:
            raise SemanticError(f"{self.kind}: {self.table} already has a primary key")
        return model.replace_table(self.table, table.with_constraint(self.constraint))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "constraint": self.constraint.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "AddConstraint":
        return cls(table=payload["table"], constraint=ConstraintDef.from_payload(payload["constraint"]))


@dataclass(frozen=True)
class DropConstraint:
    kind: ClassVar[str] = "drop_constraint"
    table: str
    constraint: ConstraintDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"drop constraint {self.constraint.effective_name(self.table)} on {self.table}"

    def describe_inverse(self) -> str:
        return f"add constraint on {self.table}: {self.constraint.to_source()}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        if table.find_constraint(self.constraint) is None:
            raise SemanticError(f"{self.kind}: {self.table} has no {self.constraint.to_source(include_name=False)}")
        return model.replace_table(self.table, table.without_constraint(self.constraint))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "constraint": self.constraint.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "DropConstraint":
        return cls(table=payload["table"], constraint=ConstraintDef.from_payload(payload["constraint"]))


@dataclass(frozen=True)
class AddIndex:
    kind: ClassVar[str] = "add_index"
    table: str
    index: IndexDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"add {self.index.to_source()} on {self.table}"

    def describe_inverse(self) -> str:
        return f"drop index {self.index.effective_name(self.table)}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        if table.find_index(self.index) is not None:
            raise SemanticError(f"{self.kind}: {self.table} already has {self.index.to_source()}")
        return model.replace_table(self.table, table.with_index(self.index))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "index": self.index.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "AddIndex":
        return cls(table=payload["table"], index=IndexDef.from_payload(payload["index"]))


@dataclass(frozen=True)
class DropIndex:
    kind: ClassVar[str] = "drop_index"
    table: str
    index: IndexDef

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"drop index {self.index.effective_name(self.table)}"

    def describe_inverse(self) -> str:
        return f"add {self.index.to_source()} on {self.table}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        if table.find_index(self.index) is None:
            raise SemanticError(f"{self.kind}: {self.table} has no {self.index.to_source(include_name=False)}")
        return model.replace_table(self.table, table.without_index(self.index))

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "index": self.index.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "DropIndex":
        return cls(table=payload["table"], index=IndexDef.from_payload(payload["index"]))


@dataclass(frozen=True)
class RenameTable:
    kind: ClassVar[str] = "rename_table"
    old_name: str
    new_name: str

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.old_name, self.new_name)

    def describe(self) -> str:
        return f"rename table {self.old_name} to {self.new_name}"

    def describe_inverse(self) -> str:
        return f"rename table {self.new_name} to {self.old_name}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.old_name, self.kind)
        if model.has_table(self.new_name):
            raise SemanticError(f"{self.kind}: table '{self.new_name}' already exists")
        renamed = replace(table.freeze_object_names(), name=self.new_name, previous_name=None)
        updated = model.replace_table(self.old_name, renamed)
        for other in updated.tables:
            if any(c.references_table == self.old_name for c in other.constraints):
                constraints = tuple(
                    replace(c, references_table=self.new_name) if c.references_table == self.old_name else c
                    for c in other.constraints
                )
                updated = updated.replace_table(other.name, replace(other, constraints=constraints))
        return updated

    def to_payload(self) -> dict:
        return {"op": self.kind, "old_name": self.old_name, "new_name": self.new_name}

    @classmethod
    def from_payload(cls, payload: dict) -> "RenameTable":
        return cls(old_name=payload["old_name"], new_name=payload["new_name"])


def _rename_in(columns: tuple[str, ...], old: str, new: str) -> tuple[str, ...]:
    return tuple(new if name == old else name for name in columns)


@dataclass(frozen=True)
class RenameColumn:
    kind: ClassVar[str] = "rename_column"
    table: str
    old_name: str
    new_name: str

    @property
    def tables(self) -> tuple[str, ...]:
        return (self.table,)

    def describe(self) -> str:
        return f"rename column {self.table}.{self.old_name} to {self.new_name}"

    def describe_inverse(self) -> str:
        return f"rename column {self.table}.{self.new_name} to {self.old_name}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        table = _require_table(model, self.table, self.kind)
        _require_column(table, self.old_name, self.kind)
        if table.column(self.new_name) is not None:
            raise SemanticError(f"{self.kind}: column '{self.table}.{self.new_name}' already exists")

        pinned = table.freeze_object_names(columns=(self.old_name,))
        renamed = replace(
            pinned,
            columns=tuple(
                replace(c, name=self.new_name, previous_name=None) if c.name == self.old_name else c
                for c in pinned.columns
            ),
            constraints=tuple(
                replace(c, columns=_rename_in(c.columns, self.old_name, self.new_name)) for c in pinned.constraints
            ),
            indexes=tuple(
                replace(i, columns=_rename_in(i.columns, self.old_name, self.new_name)) for i in pinned.indexes
            ),
        )
        updated = model.replace_table(self.table, renamed)
        for other in updated.tables:
            if not any(c.references_table == self.table for c in other.constraints):
                continue
            constraints = tuple(
                replace(c, references_columns=_rename_in(c.references_columns, self.old_name, self.new_name))
                if c.references_table == self.table
                else c
                for c in other.constraints
            )
            updated = updated.replace_table(other.name, replace(other, constraints=constraints))
        return updated

    def to_payload(self) -> dict:
        return {"op": self.kind, "table": self.table, "old_name": self.old_name, "new_name": self.new_name}

    @classmethod
    def from_payload(cls, payload: dict) -> "RenameColumn":
        return cls(table=payload["table"], old_name=payload["old_name"], new_name=payload["new_name"])


@dataclass(frozen=True)
class CreateEnum:
    kind: ClassVar[str] = "create_enum"
    enum: EnumDef

    @property
    def tables(self) -> tuple[str, ...]:
        return ()

    def describe(self) -> str:
        return f"create enum {self.enum.name} ({', '.join(self.enum.values)})"

    def describe_inverse(self) -> str:
        return f"drop enum {self.enum.name}"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        if model.has_enum(self.enum.name):
            raise SemanticError(f"{self.kind}: enum '{self.enum.name}' already exists")
        return model.with_enum(self.enum)

    def to_payload(self) -> dict:
        return {"op": self.kind, "enum": self.enum.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "CreateEnum":
        return cls(enum=EnumDef.from_payload(payload["enum"]))


@dataclass(frozen=True)
class DropEnum:
    kind: ClassVar[str] = "drop_enum"
    enum: EnumDef

    @property
    def tables(self) -> tuple[str, ...]:
        return ()

    def describe(self) -> str:
        return f"drop enum {self.enum.name}"

    def describe_inverse(self) -> str:
        return f"create enum {self.enum.name} ({', '.join(self.enum.values)})"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        if not model.has_enum(self.enum.name):
            raise SemanticError(f"{self.kind}: enum '{self.enum.name}' does not exist")
        return model.without_enum(self.enum.name)

    def to_payload(self) -> dict:
        return {"op": self.kind, "enum": self.enum.to_payload()}

    @classmethod
    def from_payload(cls, payload: dict) -> "DropEnum":
        return cls(enum=EnumDef.from_payload(payload["enum"]))


@dataclass(frozen=True)
class AlterEnumValues:
    kind: ClassVar[str] = "alter_enum_values"
    name: str
    old_values: tuple[str, ...]
    new_values: tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "old_values", tuple(self.old_values))
        object.__setattr__(self, "new_values", tuple(self.new_values))

    @property
    def tables(self) -> tuple[str, ...]:
        return ()

    @property
    def added_values(self) -> tuple[str, ...]:
        return tuple(v for v in self.new_values if v not in self.old_values)

    @property
    def removed_values(self) -> tuple[str, ...]:
        return tuple(v for v in self.old_values if v not in self.new_values)

    def describe(self) -> str:
        return f"alter enum {self.name} values ({', '.join(self.old_values)}) -> ({', '.join(self.new_values)})"

    def describe_inverse(self) -> str:
        return f"alter enum {self.name} values ({', '.join(self.new_values)}) -> ({', '.join(self.old_values)})"

    def apply_to(self, model: SchemaModel) -> SchemaModel:
        if not model.has_enum(self.name):
            raise SemanticError(f"{self.kind}: enum '{self.name}' does not exist")
        return model.replace_enum(self.name, EnumDef(name=self.name, values=self.new_values))

    def to_payload(self) -> dict:
        return {
            "op": self.kind,
            "name": self.name,
            "old_values": list(self.old_values),
            "new_values": list(self.new_values),
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "AlterEnumValues":
        return cls(name=payload["name"], old_values=payload["old_values"], new_values=payload["new_values"])


ChangeOperation = Union[
    CreateTable,
    DropTable,
    AddColumn,
    DropColumn,
    AlterColumnType,
    AlterColumnNullability,
    AlterColumnDefault,
    AddConstraint,
    DropConstraint,
    AddIndex,
    DropIndex,
    RenameTable,
    RenameColumn,
    CreateEnum,
    DropEnum,
    AlterEnumValues,
]

OPERATION_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (
        CreateTable,
        DropTable,
        AddColumn,
        DropColumn,
        AlterColumnType,
        AlterColumnNullability,
        AlterColumnDefault,
        AddConstraint,
        DropConstraint,
        AddIndex,
        DropIndex,
        RenameTable,
        RenameColumn,
        CreateEnum,
        DropEnum,
        AlterEnumValues,
    )
}


def operation_from_payload(payload: dict) -> ChangeOperation:
    kind = payload.get("op")
    operation_type = OPERATION_TYPES.get(kind)
    if operation_type is None:
        raise SemanticError(f"Unknown change operation '{kind}'")
    return operation_type.from_payload(payload)


def apply_operations(model: SchemaModel, operations: Iterable[ChangeOperation]) -> SchemaModel:
    for operation in operations:
        model = operation.apply_to(model)
    return model


def canonical_json(payload: object) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def operations_checksum(operations: Iterable[ChangeOperation]) -> str:
    payload = [operation.to_payload() for operation in operations]
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
