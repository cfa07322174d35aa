"""Park records that automatic sync cannot retry

Revision ID: 0002_parked_records
Revises: 0001_initial
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_parked_records"
down_revision = "0001_initial"
branch_labels = None
depends_on = None

SYNCED_TABLES = ("patients", "visits", "visit_protocols")


def upgrade() -> None:
    for table in SYNCED_TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.add_column(sa.Column("parked_reason", sa.String(length=255), nullable=True))
            batch_op.add_column(sa.Column("confirmed_server_id", sa.String(), nullable=True))


def downgrade() -> None:
    for table in SYNCED_TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.drop_column("confirmed_server_id")
            batch_op.drop_column("parked_reason")
