from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cdms.models import Base


class AckCampaign(Base):
    __tablename__ = "ack_campaigns"
    __table_args__ = (
        Index("idx_ack_campaigns_tenant_document", "tenant_id", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    audience_type: Mapped[str] = mapped_column(String(16), nullable=False)  # all | custom | role | department
    audience_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    quiz_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # draft is reserved; campaigns are active once assignments exist, completed when all are acknowledged
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")

    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    assignments: Mapped[list["AckAssignment"]] = relationship(
        "AckAssignment",
        back_populates="campaign",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dict(self) -> dict:
        total = len(self.assignments)
        done = sum(1 for a in self.assignments if a.status == "acknowledged")
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "document_id": self.document_id,
            "title": self.title,
            "description": self.description,
            "audience_type": self.audience_type,
            "audience_ids": self.audience_ids or [],
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "quiz_id": self.quiz_id,
            "status": self.status,
            "created_by_user_id": self.created_by_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "assignments_total": total,
            "assignments_acknowledged": done,
        }


class AckAssignment(Base):
    __tablename__ = "ack_assignments"
    __table_args__ = (
        UniqueConstraint("campaign_id", "user_id", name="uq_ack_assignment_campaign_user"),
        Index("idx_ack_assignments_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    campaign_id: Mapped[int] = mapped_column(ForeignKey("ack_campaigns.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending | acknowledged
    quiz_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    quiz_passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    campaign: Mapped[AckCampaign] = relationship("AckCampaign", back_populates="assignments", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "user_id": self.user_id,
            "status": self.status,
            "quiz_score": self.quiz_score,
            "quiz_passed": self.quiz_passed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
