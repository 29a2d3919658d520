from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schemaflow.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationRecordEntry(Base):
    """One append-only ledger row; a unit's status is its most recent row."""

    __tablename__ = "migration_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    phase: Mapped[str | None] = mapped_column(String(32), nullable=True)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_operations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    resolutions: Mapped[list["MigrationResolution"]] = relationship(
        "MigrationResolution",
        back_populates="record",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class MigrationResolution(Base):
    __tablename__ = "migration_resolutions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String(255), nullable=False)
    record_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("migration_records.id", ondelete="CASCADE"), nullable=False
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    record: Mapped[MigrationRecordEntry] = relationship("MigrationRecordEntry", back_populates="resolutions")


class DriftAcknowledgement(Base):
    __tablename__ = "drift_acknowledgements"
    __table_args__ = (
        UniqueConstraint("target", "expected_checksum", "actual_checksum", name="uq_drift_acknowledgement"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target: Mapped[str] = mapped_column(String(255), nullable=False)
    expected_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    actual_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    acknowledged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class MigrationLock(Base):
    __tablename__ = "migration_locks"

    target: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
