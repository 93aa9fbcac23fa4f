"""Initial schema: funnels, assessments, answers, idempotency keys, jobs.

Creates the legacy funnel tables read by the resolver, the assessment and
answer tables with their uniqueness guarantees, the idempotency key store
and the processing job table.

Revision ID: 20261001_initial
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

# revision identifiers, used by Alembic.
revision = "20261001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- Legacy funnel definitions ---
    op.create_table(
        "funnels",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.Text(), nullable=False, unique=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_table(
        "funnel_steps",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("funnel_id", UUID(as_uuid=True), sa.ForeignKey("funnels.id"), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("step_type", sa.String(40), nullable=False),
        sa.UniqueConstraint("funnel_id", "order_index", name="uq_step_funnel_order"),
    )
    op.create_table(
        "funnel_questions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("step_id", UUID(as_uuid=True), sa.ForeignKey("funnel_steps.id"), nullable=False),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("label", sa.Text(), nullable=False),
        sa.Column("question_type", sa.String(40), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
    )
    op.create_index("ix_question_step", "funnel_questions", ["step_id"])
    op.create_table(
        "funnel_conditional_rules",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("step_id", UUID(as_uuid=True), sa.ForeignKey("funnel_steps.id"), nullable=False),
        sa.Column(
            "question_id", UUID(as_uuid=True), sa.ForeignKey("funnel_questions.id"), nullable=False
        ),
        sa.Column("rule_type", sa.String(40), nullable=False),
        sa.Column("logic", sa.String(3), nullable=False),
        sa.Column("conditions", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )

    # --- Assessments ---
    op.create_table(
        "assessments",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("patient_id", sa.Text(), nullable=False),
        sa.Column("funnel_slug", sa.Text(), nullable=False),
        sa.Column("funnel_id", UUID(as_uuid=True), nullable=True),
        sa.Column("funnel_version", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("current_step_id", sa.Text(), nullable=True),
        sa.Column("current_step_order", sa.Integer(), nullable=True),
        sa.Column("started_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('in_progress', 'completed', 'abandoned')",
            name="ck_assessment_status",
        ),
        sa.CheckConstraint(
            "status != 'completed' OR completed_at IS NOT NULL",
            name="ck_completed_has_timestamp",
        ),
    )
    # At most one in-progress assessment per patient and funnel
    op.create_index(
        "ux_active_patient_funnel",
        "assessments",
        ["patient_id", "funnel_slug"],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )
    op.create_index("ix_assessment_patient", "assessments", ["patient_id", "started_at"])
    op.create_index(
        "ix_assessment_completed",
        "assessments",
        ["completed_at"],
        postgresql_where=sa.text("status = 'completed'"),
    )

    op.create_table(
        "assessment_answers",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "assessment_id", UUID(as_uuid=True), sa.ForeignKey("assessments.id"), nullable=False
        ),
        sa.Column("question_key", sa.Text(), nullable=False),
        sa.Column("question_id", sa.Text(), nullable=False),
        sa.Column("step_id", sa.Text(), nullable=False),
        sa.Column("value", JSONB(), nullable=False),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "assessment_id", "question_key", name="uq_answer_assessment_question"
        ),
    )

    # --- Idempotency keys ---
    op.create_table(
        "idempotency_keys",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("endpoint_path", sa.Text(), nullable=False),
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("caller_id", sa.Text(), nullable=True),
        sa.Column("request_hash", sa.Text(), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", JSONB(), nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "endpoint_path", "idempotency_key", name="uq_idempotency_endpoint_key"
        ),
    )
    op.create_index("ix_idempotency_expires_at", "idempotency_keys", ["expires_at"])

    # --- Processing jobs ---
    op.create_table(
        "processing_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "assessment_id",
            UUID(as_uuid=True),
            sa.ForeignKey("assessments.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("correlation_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("stage", sa.String(20), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("schema_version", sa.Text(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed')",
            name="ck_job_status",
        ),
        sa.CheckConstraint("attempt >= 1 AND attempt <= max_attempts", name="ck_job_attempt"),
    )
    op.create_index(
        "ix_job_queued",
        "processing_jobs",
        ["created_at"],
        postgresql_where=sa.text("status = 'queued'"),
    )


def downgrade() -> None:
    op.drop_index("ix_job_queued", table_name="processing_jobs")
    op.drop_table("processing_jobs")
    op.drop_index("ix_idempotency_expires_at", table_name="idempotency_keys")
    op.drop_table("idempotency_keys")
    op.drop_table("assessment_answers")
    op.drop_index("ix_assessment_completed", table_name="assessments")
    op.drop_index("ix_assessment_patient", table_name="assessments")
    op.drop_index("ux_active_patient_funnel", table_name="assessments")
    op.drop_table("assessments")
    op.drop_table("funnel_conditional_rules")
    op.drop_index("ix_question_step", table_name="funnel_questions")
    op.drop_table("funnel_questions")
    op.drop_table("funnel_steps")
    op.drop_table("funnels")
