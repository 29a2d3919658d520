import os
import sys
from pathlib import Path

from collections.abc import Generator
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

TEST_DATABASE_URL = "sqlite://"
os.environ.setdefault("SCHEMAFLOW_HISTORY_DATABASE_URL", TEST_DATABASE_URL)

from schemaflow.config import Settings  # noqa: E402
from schemaflow.database import Base, create_engine_with_fallback  # noqa: E402
from schemaflow.main import app  # noqa: E402
from schemaflow.routers.migrations import get_migration_engine  # noqa: E402
from schemaflow.services.migration_engine import MigrationEngine  # noqa: E402
from schemaflow.services.migration_errors import StatementExecutionError  # noqa: E402
from schemaflow.services.migration_history import MigrationHistoryStore  # noqa: E402
import schemaflow.models  # noqa: E402,F401


class FakeConnection:
    """Records statements instead of running them.

    Statements executed inside a transaction only reach ``executed`` on commit.
    Any statement containing ``fail_on`` raises like a database error would.
    """

    def __init__(
        self,
        *,
        dialect_name: str = "postgresql",
        transactional: bool = True,
        row_counts: Optional[dict[str, int]] = None,
    ) -> None:
        self.target_name = "test"
        self.dialect_name = dialect_name
        self.supports_transactional_ddl = transactional
        self.row_counts: dict[str, int] = dict(row_counts or {})
        self.scalars: dict[str, Any] = {}
        self.fail_on: Optional[str] = None
        self.executed: list[str] = []
        self.rollbacks = 0
        self._buffer: Optional[list[str]] = None

    def execute(self, statement: str) -> None:
        if self.fail_on and self.fail_on in statement:
            raise StatementExecutionError(statement, "simulated failure")
        if self._buffer is not None:
            self._buffer.append(statement)
        else:
            self.executed.append(statement)

    def begin_transaction(self) -> None:
        self._buffer = []

    def commit(self) -> None:
        self.executed.extend(self._buffer or [])
        self._buffer = None

    def rollback(self) -> None:
        self._buffer = None
        self.rollbacks += 1

    def estimate_row_count(self, table: str) -> Optional[int]:
        return self.row_counts.get(table)

    def query_scalar(self, statement: str) -> Any:
        return self.scalars.get(statement, 0)


@pytest.fixture()
def history_engine():
    engine = create_engine_with_fallback(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(history_engine) -> sessionmaker:
    return sessionmaker(bind=history_engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def history(session_factory) -> MigrationHistoryStore:
    return MigrationHistoryStore(session_factory, target="test")


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        history_database_url=TEST_DATABASE_URL,
        target_name="test",
        lock_timeout_seconds=1.0,
        lock_poll_interval_seconds=0.01,
    )


@pytest.fixture()
def fake_connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture()
def migration_engine(history, fake_connection, settings) -> MigrationEngine:
    return MigrationEngine(history, fake_connection, settings=settings)


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(migration_engine: MigrationEngine) -> Generator[TestClient, None, None]:
    def override_get_migration_engine():
        try:
            yield migration_engine
        finally:
            pass

    app.dependency_overrides[get_migration_engine] = override_get_migration_engine

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_migration_engine, None)
