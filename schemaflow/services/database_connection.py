"""Connection capability used by the applier to run DDL against a target database."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from schemaflow.database import create_engine_with_fallback
from schemaflow.services.ddl_renderer import quote_identifier
from schemaflow.services.migration_errors import StatementExecutionError

logger = logging.getLogger(__name__)

# pysqlite commits implicitly before DDL, so only PostgreSQL can roll a unit back.
_TRANSACTIONAL_DDL_DIALECTS = frozenset({"postgresql"})


@runtime_checkable
class DatabaseConnection(Protocol):
    target_name: str
    dialect_name: str
    supports_transactional_ddl: bool

    def execute(self, statement: str) -> None: ...

    def begin_transaction(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def estimate_row_count(self, table: str) -> Optional[int]: ...

    def query_scalar(self, statement: str) -> Any: ...


class SqlAlchemyDatabaseConnection:
    """Runs statements on a SQLAlchemy engine.

    Outside an explicit transaction each statement commits on its own, so a failure
    part-way through a unit leaves the earlier statements in place.
    """

    def __init__(self, engine: Engine, *, target_name: str = "default") -> None:
        self.engine = engine
        self.target_name = target_name
        self.dialect_name = engine.dialect.name
        self.supports_transactional_ddl = self.dialect_name in _TRANSACTIONAL_DDL_DIALECTS
        self._connection: Connection | None = None
        self._transaction = None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    def execute(self, statement: str) -> None:
        logger.info("Executing on %s: %s", self.target_name, statement)
        try:
            if self._connection is not None:
                self._connection.execute(text(statement))
                return
            with self.engine.begin() as connection:
                connection.execute(text(statement))
        except SQLAlchemyError as exc:
            detail = str(getattr(exc, "orig", exc))
            logger.error("Statement failed on %s: %s", self.target_name, detail)
            raise StatementExecutionError(statement, detail) from exc

    def begin_transaction(self) -> None:
        if self._transaction is not None:
            raise StatementExecutionError("BEGIN", "a transaction is already open")
        try:
            self._connection = self.engine.connect()
            self._transaction = self._connection.begin()
        except SQLAlchemyError as exc:
            self._close()
            raise StatementExecutionError("BEGIN", str(getattr(exc, "orig", exc))) from exc

    def commit(self) -> None:
        if self._transaction is None:
            raise StatementExecutionError("COMMIT", "no transaction is open")
        try:
            self._transaction.commit()
        except SQLAlchemyError as exc:
            raise StatementExecutionError("COMMIT", str(getattr(exc, "orig", exc))) from exc
        finally:
            self._close()

    def rollback(self) -> None:
        if self._transaction is None:
            return
        try:
            self._transaction.rollback()
        except SQLAlchemyError as exc:
            raise StatementExecutionError("ROLLBACK", str(getattr(exc, "orig", exc))) from exc
        finally:
            self._close()

    def _close(self) -> None:
        if self._connection is not None:
            self._connection.close()
        self._connection = None
        self._transaction = None

    def query_scalar(self, statement: str) -> Any:
        try:
            if self._connection is not None:
                return self._connection.execute(text(statement)).scalar()
            with self.engine.connect() as connection:
                return connection.execute(text(statement)).scalar()
        except SQLAlchemyError as exc:
            raise StatementExecutionError(statement, str(getattr(exc, "orig", exc))) from exc

    def estimate_row_count(self, table: str) -> Optional[int]:
        try:
            with self.engine.connect() as connection:
                if self.dialect_name == "postgresql":
                    value = connection.execute(
                        text("SELECT reltuples::bigint FROM pg_class WHERE oid = to_regclass(:name)"),
                        {"name": quote_identifier(table)},
                    ).scalar()
                    # reltuples is -1 until the table has been analysed.
                    if value is None or value < 0:
                        return None
                    return int(value)
                value = connection.execute(text(f"SELECT COUNT(*) FROM {quote_identifier(table)}")).scalar()
                return int(value) if value is not None else None
        except SQLAlchemyError:
            logger.warning("Unable to estimate rows for %s on %s", table, self.target_name, exc_info=True)
            return None

    def close(self) -> None:
        self.rollback()


@contextmanager
def connect(url: str, *, target_name: Optional[str] = None) -> Iterator[SqlAlchemyDatabaseConnection]:
    """Open a connection capability for ``url`` and dispose of the engine afterwards."""

    engine = create_engine_with_fallback(url)
    name = target_name or make_url(url).render_as_string(hide_password=True)
    connection = SqlAlchemyDatabaseConnection(engine, target_name=name)
    try:
        yield connection
    finally:
        connection.close()
        engine.dispose()


__all__ = ["DatabaseConnection", "SqlAlchemyDatabaseConnection", "connect"]
