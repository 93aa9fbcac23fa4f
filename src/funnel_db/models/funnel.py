"""Legacy funnel tables.

Funnels that predate the YAML catalog are stored relationally.  The core
never writes to these tables; they are read once per request and mapped
into the same ``FunnelDefinition`` shape the catalog produces.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funnel_db.models.base import Base


class Funnel(Base):
    """A named questionnaire flow."""

    __tablename__ = "funnels"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    steps: Mapped[list["FunnelStep"]] = relationship(
        back_populates="funnel", order_by="FunnelStep.order_index"
    )

    def __repr__(self) -> str:
        return f"<Funnel(slug={self.slug!r}, active={self.is_active})>"


class FunnelStep(Base):
    __tablename__ = "funnel_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    funnel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("funnels.id"), nullable=False
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    # e.g. "question_step", "info_step"
    step_type: Mapped[str] = mapped_column(
        String(40), nullable=False, default="question_step"
    )

    funnel: Mapped[Funnel] = relationship(back_populates="steps")
    questions: Mapped[list["FunnelQuestion"]] = relationship(
        back_populates="step", order_by="FunnelQuestion.order_index"
    )
    rules: Mapped[list["FunnelConditionalRule"]] = relationship(
        back_populates="step", order_by="FunnelConditionalRule.priority.desc()"
    )

    __table_args__ = (
        UniqueConstraint("funnel_id", "order_index", name="uq_step_funnel_order"),
    )


class FunnelQuestion(Base):
    __tablename__ = "funnel_questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    step_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("funnel_steps.id"), nullable=False
    )
    key: Mapped[str] = mapped_column(Text, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    question_type: Mapped[str] = mapped_column(String(40), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    step: Mapped[FunnelStep] = relationship(back_populates="questions")

    __table_args__ = (Index("ix_question_step", "step_id"),)


class FunnelConditionalRule(Base):
    __tablename__ = "funnel_conditional_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    step_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("funnel_steps.id"), nullable=False
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("funnel_questions.id"), nullable=False
    )
    rule_type: Mapped[str] = mapped_column(String(40), nullable=False)
    logic: Mapped[str] = mapped_column(String(3), nullable=False, default="AND")
    # [{"question_key": ..., "operator": ..., "value" | "values": ...}]
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, server_default=text("'[]'::jsonb")
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    step: Mapped[FunnelStep] = relationship(back_populates="rules")
