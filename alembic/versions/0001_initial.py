"""Initial local store schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _sync_columns():
    return [
        sa.Column("is_synced", sa.Boolean(), nullable=False),
        sa.Column("sync_action", sa.String(length=10), nullable=True),
        sa.Column("last_sync_attempt", sa.DateTime(), nullable=True),
        sa.Column("fail_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "patients",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("age", sa.Integer(), nullable=True),
        sa.Column("gender", sa.String(length=20), nullable=True),
        sa.Column("address", sa.String(length=500), nullable=False),
        sa.Column("phone_number", sa.String(length=50), nullable=False),
        sa.Column("policy_number", sa.String(length=50), nullable=False),
        sa.Column("allergies", sa.JSON(), nullable=True),
        sa.Column("chronic_conditions", sa.JSON(), nullable=True),
        *_sync_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_patients_is_synced", "patients", ["is_synced"])

    op.create_table(
        "visits",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("patient_id", sa.String(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("address", sa.String(length=500), nullable=False),
        sa.Column("reason_for_visit", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=False),
        sa.Column("assigned_staff_id", sa.String(), nullable=True),
        sa.Column("assigned_staff_name", sa.String(length=200), nullable=True),
        sa.Column("actual_start_time", sa.DateTime(), nullable=True),
        sa.Column("actual_end_time", sa.DateTime(), nullable=True),
        sa.Column("is_from_request", sa.Boolean(), nullable=False),
        sa.Column("original_request_id", sa.String(), nullable=True),
        *_sync_columns(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_visits_patient_id", "visits", ["patient_id"])
    op.create_index("ix_visits_assigned_staff_id", "visits", ["assigned_staff_id"])
    op.create_index("ix_visits_is_synced", "visits", ["is_synced"])

    op.create_table(
        "protocol_templates",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("complaints_template", sa.Text(), nullable=True),
        sa.Column("anamnesis_template", sa.Text(), nullable=True),
        sa.Column("objective_status_template", sa.Text(), nullable=True),
        sa.Column("recommendations_template", sa.Text(), nullable=True),
        sa.Column("required_vitals", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "visit_protocols",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("visit_id", sa.String(), nullable=False),
        sa.Column("template_id", sa.String(), nullable=True),
        sa.Column("complaints", sa.Text(), nullable=True),
        sa.Column("anamnesis", sa.Text(), nullable=True),
        sa.Column("objective_status", sa.Text(), nullable=True),
        sa.Column("diagnosis", sa.Text(), nullable=True),
        sa.Column("diagnosis_code", sa.String(length=20), nullable=True),
        sa.Column("recommendations", sa.Text(), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("systolic_bp", sa.Integer(), nullable=True),
        sa.Column("diastolic_bp", sa.Integer(), nullable=True),
        sa.Column("pulse", sa.Integer(), nullable=True),
        sa.Column("additional_vitals", sa.JSON(), nullable=False),
        *_sync_columns(),
        sa.ForeignKeyConstraint(["visit_id"], ["visits.id"], ondelete="CASCADE", onupdate="CASCADE"),
        sa.ForeignKeyConstraint(["template_id"], ["protocol_templates.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_visit_protocols_visit_id", "visit_protocols", ["visit_id"], unique=True)
    op.create_index("ix_visit_protocols_template_id", "visit_protocols", ["template_id"])
    op.create_index("ix_visit_protocols_is_synced", "visit_protocols", ["is_synced"])


def downgrade() -> None:
    op.drop_table("visit_protocols")
    op.drop_table("protocol_templates")
    op.drop_table("visits")
    op.drop_table("patients")
