"""create migration ledger

Revision ID: 20261018_000001
Revises: 
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "migration_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("target", sa.String(length=255), nullable=False),
        sa.Column("unit_id", sa.String(length=255), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("label", sa.String(length=255), nullable=False),
        sa.Column("phase", sa.String(length=32), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("completed_operations", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index("ix_migration_records_target", "migration_records", ["target"])
    op.create_index("ix_migration_records_unit_id", "migration_records", ["unit_id"])
    op.create_index("ix_migration_records_checksum", "migration_records", ["checksum"])

    op.create_table(
        "migration_resolutions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("target", sa.String(length=255), nullable=False),
        sa.Column("unit_id", sa.String(length=255), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["record_id"], ["migration_records.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_migration_resolutions_target", "migration_resolutions", ["target"])

    op.create_table(
        "drift_acknowledgements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("target", sa.String(length=255), nullable=False),
        sa.Column("expected_checksum", sa.String(length=64), nullable=False),
        sa.Column("actual_checksum", sa.String(length=64), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("target", "expected_checksum", "actual_checksum", name="uq_drift_acknowledgement"),
    )

    op.create_table(
        "migration_locks",
        sa.Column("target", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("holder", sa.String(length=255), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("migration_locks")
    op.drop_table("drift_acknowledgements")
    op.drop_index("ix_migration_resolutions_target", table_name="migration_resolutions")
    op.drop_table("migration_resolutions")
    op.drop_index("ix_migration_records_checksum", table_name="migration_records")
    op.drop_index("ix_migration_records_unit_id", table_name="migration_records")
    op.drop_index("ix_migration_records_target", table_name="migration_records")
    op.drop_table("migration_records")
