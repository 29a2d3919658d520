"""Parser and canonical serializer for the declarative schema source format.

The format is line oriented::

    enum role {
      admin
      member
    }

    table users was people {
      id bigint not null generated primary key
      email text not null unique
      role enum(role) not null default ('member')
      org_id bigint
      foreign key (org_id) references orgs (id) on delete cascade
      check (length(email) > 3)
      unique index (email) where (deleted_at is null)
    }

``serialize`` always emits the expanded, sorted form so that two structurally
identical models produce byte-identical text.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Optional

from schemaflow.services.migration_errors import SchemaSyntaxError
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

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_MEMBER_TERMINATORS = {"\n", ";", ","}


def _collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace outside single-quoted literals."""

    parts: list[str] = []
    in_literal = False
    pending_space = False
    for char in text:
        if char == "'":
            in_literal = not in_literal
        elif not in_literal and char.isspace():
            pending_space = True
            continue
        if pending_space:
            parts.append(" ")
            pending_space = False
        parts.append(char)
    return "".join(parts)


class _Scanner:
    def __init__(self, source: str) -> None:
        self.source = source
        self.pos = 0
        self.line = 1
        self.column = 1

    def error(self, message: str) -> SchemaSyntaxError:
        return SchemaSyntaxError(self.line, self.column, message)

    def _advance(self, count: int = 1) -> None:
        for _ in range(count):
            if self.pos >= len(self.source):
                return
            if self.source[self.pos] == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
            self.pos += 1

    def _skip_comment(self) -> bool:
        if self.source.startswith("#", self.pos) or self.source.startswith("--", self.pos):
            while self.pos < len(self.source) and self.source[self.pos] != "\n":
                self._advance()
            return True
        return False

    def skip(self, newlines: bool = True) -> None:
        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char in " \t\r" or (newlines and char == "\n"):
                self._advance()
            elif not self._skip_comment():
                return

    def at_end(self) -> bool:
        self.skip()
        return self.pos >= len(self.source)

    def peek(self, newlines: bool = True) -> str:
        self.skip(newlines)
        return self.source[self.pos] if self.pos < len(self.source) else ""

    def peek_word(self, newlines: bool = True) -> Optional[str]:
        self.skip(newlines)
        match = _IDENT.match(self.source, self.pos)
        return match.group(0) if match else None

    def peek_word_after(self, word: str) -> Optional[str]:
        """Return the identifier following ``word`` on the same line without consuming anything."""

        start = self.pos
        line, column = self.line, self.column
        try:
            self.expect_word(word)
            return self.peek_word(newlines=False) or self.peek(newlines=False)
        finally:
            self.pos, self.line, self.column = start, line, column

    def ident(self, what: str = "identifier") -> str:
        self.skip()
        match = _IDENT.match(self.source, self.pos)
        if not match:
            raise self.error(f"expected {what}")
        self._advance(len(match.group(0)))
        return match.group(0)

    def ident_inline(self, what: str = "identifier") -> str:
        self.skip(newlines=False)
        match = _IDENT.match(self.source, self.pos)
        if not match:
            raise self.error(f"expected {what}")
        self._advance(len(match.group(0)))
        return match.group(0)

    def expect_word(self, word: str) -> None:
        self.skip(newlines=False)
        match = _IDENT.match(self.source, self.pos)
        if not match or match.group(0).lower() != word:
            raise self.error(f"expected '{word}'")
        self._advance(len(match.group(0)))

    def accept_word(self, word: str) -> bool:
        found = self.peek_word(newlines=False)
        if found is not None and found.lower() == word:
            self._advance(len(found))
            return True
        return False

    def expect_char(self, char: str, newlines: bool = True) -> None:
        if self.peek(newlines) != char:
            raise self.error(f"expected '{char}'")
        self._advance()

    def ident_list(self) -> tuple[str, ...]:
        self.expect_char("(", newlines=False)
        items = [self.ident("column name")]
        while self.peek() == ",":
            self._advance()
            items.append(self.ident("column name"))
        self.expect_char(")")
        return tuple(items)

    def expression(self) -> str:
        """Consume a parenthesised expression and return its inner text."""

        self.skip(newlines=False)
        if self.peek(newlines=False) != "(":
            raise self.error("expected '(' to start an expression")
        start_line, start_column = self.line, self.column
        self._advance()
        begin = self.pos
        depth = 1
        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char == "'":
                self._advance()
                while self.pos < len(self.source) and self.source[self.pos] != "'":
                    self._advance()
                if self.pos >= len(self.source):
                    break
            elif char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0:
                    text = self.source[begin : self.pos].strip()
                    self._advance()
                    if not text:
                        raise SchemaSyntaxError(start_line, start_column, "expression must not be empty")
                    return _collapse_whitespace(text)
            self._advance()
        raise SchemaSyntaxError(start_line, start_column, "unterminated expression")

    def end_member(self) -> None:
        self.skip(newlines=False)
        if self.pos >= len(self.source):
            return
        char = self.source[self.pos]
        if char in _MEMBER_TERMINATORS:
            self._advance()
            return
        if char == "}":
            return
        raise self.error(f"unexpected '{char}'")


class _Parser:
    def __init__(self, source: str) -> None:
        self.scanner = _Scanner(source)

    def parse(self) -> SchemaModel:
        tables: list[TableDef] = []
        enums: list[EnumDef] = []
        scanner = self.scanner
        while not scanner.at_end():
            keyword = scanner.peek_word()
            if keyword == "table":
                tables.append(self._table())
            elif keyword == "enum":
                enums.append(self._enum())
            else:
                raise scanner.error("expected 'table' or 'enum'")
        return SchemaModel(tables=tuple(tables), enums=tuple(enums))

    def _enum(self) -> EnumDef:
        scanner = self.scanner
        scanner.ident()
        name = scanner.ident("enum name")
        scanner.expect_char("{")
        values: list[str] = []
        while scanner.peek() != "}":
            if not scanner.peek():
                raise scanner.error(f"unterminated enum '{name}'")
            values.append(scanner.ident("enum value"))
            if scanner.peek() == ",":
                scanner.expect_char(",")
        scanner.expect_char("}")
        return EnumDef(name=name, values=tuple(values))

    def _table(self) -> TableDef:
        scanner = self.scanner
        scanner.ident()
        name = scanner.ident("table name")
        previous_name = None
        if scanner.accept_word("was"):
            previous_name = scanner.ident_inline("previous table name")
        scanner.expect_char("{")

        columns: list[ColumnDef] = []
        constraints: list[ConstraintDef] = []
        indexes: list[IndexDef] = []
        while scanner.peek() != "}":
            if not scanner.peek():
                raise scanner.error(f"unterminated table '{name}'")
            self._member(columns, constraints, indexes)
            scanner.end_member()
        scanner.expect_char("}")
        return TableDef(
            name=name,
            columns=tuple(columns),
            constraints=tuple(constraints),
            indexes=tuple(indexes),
            previous_name=previous_name,
        )

    def _member(
        self,
        columns: list[ColumnDef],
        constraints: list[ConstraintDef],
        indexes: list[IndexDef],
    ) -> None:
        scanner = self.scanner
        word = (scanner.peek_word() or "").lower()
        following = (scanner.peek_word_after(word) or "").lower() if word else ""

        if word == "primary" and following == "key":
            scanner.expect_word("primary")
            scanner.expect_word("key")
            cols = scanner.ident_list()
            constraints.append(ConstraintDef(ConstraintKind.PRIMARY_KEY, cols, name=self._object_name()))
        elif word == "unique" and following == "index":
            scanner.expect_word("unique")
            scanner.expect_word("index")
            indexes.append(self._index_rest(unique=True))
        elif word == "unique" and following == "(":
            scanner.expect_word("unique")
            cols = scanner.ident_list()
            constraints.append(ConstraintDef(ConstraintKind.UNIQUE, cols, name=self._object_name()))
        elif word == "foreign" and following == "key":
            constraints.append(self._foreign_key())
        elif word == "check" and following == "(":
            scanner.expect_word("check")
            expression = scanner.expression()
            constraints.append(ConstraintDef(ConstraintKind.CHECK, expression=expression, name=self._object_name()))
        elif word == "index" and following == "(":
            scanner.expect_word("index")
            indexes.append(self._index_rest(unique=False))
        else:
            column, column_constraints = self._column()
            columns.append(column)
            constraints.extend(column_constraints)

    def _object_name(self) -> Optional[str]:
        if self.scanner.accept_word("as"):
            return self.scanner.ident_inline("constraint name")
        return None

    def _index_rest(self, unique: bool) -> IndexDef:
        scanner = self.scanner
        cols = scanner.ident_list()
        predicate = None
        if scanner.accept_word("where"):
            predicate = scanner.expression()
        return IndexDef(columns=cols, unique=unique, predicate=predicate, name=self._object_name())

    def _foreign_key(self) -> ConstraintDef:
        scanner = self.scanner
        scanner.expect_word("foreign")
        scanner.expect_word("key")
        cols = scanner.ident_list()
        scanner.expect_word("references")
        references_table = scanner.ident_inline("referenced table")
        references_columns = scanner.ident_list()
        on_delete = OnDeletePolicy.NO_ACTION
        if scanner.accept_word("on"):
            scanner.expect_word("delete")
            on_delete = self._on_delete_policy()
        return ConstraintDef(
            ConstraintKind.FOREIGN_KEY,
            cols,
            references_table=references_table,
            references_columns=references_columns,
            on_delete=on_delete,
            name=self._object_name(),
        )

    def _on_delete_policy(self) -> OnDeletePolicy:
        scanner = self.scanner
        if scanner.accept_word("restrict"):
            return OnDeletePolicy.RESTRICT
        if scanner.accept_word("cascade"):
            return OnDeletePolicy.CASCADE
        if scanner.accept_word("set"):
            scanner.expect_word("null")
            return OnDeletePolicy.SET_NULL
        if scanner.accept_word("no"):
            scanner.expect_word("action")
            return OnDeletePolicy.NO_ACTION
        raise scanner.error("expected restrict, cascade, set null or no action")

    def _column_type(self) -> ColumnType:
        scanner = self.scanner
        line, column = scanner.line, scanner.column
        type_name = scanner.ident_inline("column type").lower()
        if type_name == ScalarType.ENUM_REF.value:
            scanner.expect_char("(", newlines=False)
            enum_name = scanner.ident("enum name")
            scanner.expect_char(")")
            return ColumnType(ScalarType.ENUM_REF, enum_name)
        try:
            return ColumnType(ScalarType(type_name))
        except ValueError:
            raise SchemaSyntaxError(line, column, f"unknown column type '{type_name}'") from None

    def _column(self) -> tuple[ColumnDef, list[ConstraintDef]]:
        scanner = self.scanner
        name = scanner.ident("column name")
        column_type = self._column_type()
        nullable = True
        default = None
        generated = False
        previous_name = None
        constraints: list[ConstraintDef] = []

        while True:
            word = (scanner.peek_word(newlines=False) or "").lower()
            if word == "not":
                scanner.expect_word("not")
                scanner.expect_word("null")
                nullable = False
            elif word == "null":
                scanner.expect_word("null")
                nullable = True
            elif word == "default":
                scanner.expect_word("default")
                default = scanner.expression()
            elif word == "generated":
                scanner.expect_word("generated")
                generated = True
            elif word == "primary":
                scanner.expect_word("primary")
                scanner.expect_word("key")
                constraints.append(ConstraintDef(ConstraintKind.PRIMARY_KEY, (name,)))
                nullable = False
            elif word == "unique":
                scanner.expect_word("unique")
                constraints.append(ConstraintDef(ConstraintKind.UNIQUE, (name,)))
            elif word == "was":
                scanner.expect_word("was")
                previous_name = scanner.ident_inline("previous column name")
            elif word:
                raise scanner.error(f"unexpected '{word}' in definition of column '{name}'")
            else:
                break

        column = ColumnDef(
            name=name,
            type=column_type,
            nullable=nullable,
            default=default,
            generated=generated,
            previous_name=previous_name,
        )
        return column, constraints


def parse(source: str) -> SchemaModel:
    """Parse schema source into a validated model."""

    return _Parser(source).parse().validate()


def load(path: str | Path) -> SchemaModel:
    return parse(Path(path).read_text(encoding="utf-8"))


def _serialize_enum(enum: EnumDef) -> str:
    lines = [f"enum {enum.name} {{"]
    lines.extend(f"  {value}" for value in enum.values)
    lines.append("}")
    return "\n".join(lines)


def _serialize_table(table: TableDef) -> str:
    header = f"table {table.name}"
    if table.previous_name:
        header = f"{header} was {table.previous_name}"
    lines = [f"{header} {{"]
    lines.extend(f"  {column.to_source()}" for column in table.columns)
    lines.extend(f"  {constraint.to_source()}" for constraint in sorted(table.constraints, key=ConstraintDef.sort_key))
    lines.extend(f"  {index.to_source()}" for index in sorted(table.indexes, key=IndexDef.sort_key))
    lines.append("}")
    return "\n".join(lines)


def serialize(model: SchemaModel) -> str:
    blocks = [_serialize_enum(enum) for enum in sorted(model.enums, key=lambda e: e.name)]
    blocks.extend(_serialize_table(table) for table in sorted(model.tables, key=lambda t: t.name))
    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"


def checksum(model: SchemaModel) -> str:
    return hashlib.sha256(serialize(model).encode("utf-8")).hexdigest()


__all__ = ["checksum", "load", "parse", "serialize"]
