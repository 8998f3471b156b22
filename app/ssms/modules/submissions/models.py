from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.ssms.models import Base


STATUS_SUBMITTED = "Submitted"
STATUS_APPROVED = "Approved"
STATUS_REJECTED = "Rejected"
STATUS_RECALLED = "Recalled"

STATUSES = (STATUS_SUBMITTED, STATUS_APPROVED, STATUS_REJECTED, STATUS_RECALLED)
TERMINAL_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_RECALLED})

ACTION_APPROVE = "Approve"
ACTION_REJECT = "Reject"

RECIPIENT_TO = "To"
RECIPIENT_CC = "CC"
RECIPIENT_TYPES = (RECIPIENT_TO, RECIPIENT_CC)


class Procedure(Base):
    __tablename__ = "procedures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_id: Mapped[int | None] = mapped_column(ForeignKey("units.id", ondelete="SET NULL"), nullable=True)
    # default designated approver for submissions filed against this procedure
    approver_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # SUB-YYYYMMDD-NNN

    procedure_id: Mapped[int | None] = mapped_column(ForeignKey("procedures.id", ondelete="RESTRICT"), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    # originating unit (submitter's unit at creation time)
    unit_id: Mapped[int | None] = mapped_column(ForeignKey("units.id", ondelete="RESTRICT"), nullable=True)

    # Submitted -> Approved | Rejected | Recalled
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_SUBMITTED)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    submitted_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    designated_approver_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
    )
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    recalled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    recall_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    recipients: Mapped[list["SubmissionRecipient"]] = relationship(
        "SubmissionRecipient",
        back_populates="submission",
        lazy="selectin",
        order_by="SubmissionRecipient.unit_id",
    )
    files: Mapped[list["SubmissionFile"]] = relationship(
        "SubmissionFile",
        back_populates="submission",
        lazy="selectin",
        order_by="SubmissionFile.id",
    )


class SubmissionRecipient(Base):
    __tablename__ = "submission_recipients"

    submission_id: Mapped[int] = mapped_column(ForeignKey("submissions.id", ondelete="RESTRICT"), primary_key=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="RESTRICT"), primary_key=True)
    recipient_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    recipient_type: Mapped[str] = mapped_column(String(8), nullable=False, default=RECIPIENT_TO)

    # only mutation after creation
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    read_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    submission: Mapped[Submission] = relationship("Submission", back_populates="recipients", lazy="selectin")


class ApprovalDecision(Base):
    """
    Append-only decision log. Never updated or deleted.
    """

    __tablename__ = "approval_decisions"
    __table_args__ = (
        UniqueConstraint("submission_id", name="uq_approval_decision_submission"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_id: Mapped[int] = mapped_column(ForeignKey("submissions.id", ondelete="RESTRICT"), nullable=False)
    approver_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)  # Approve | Reject
    note: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    action_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class SubmissionFile(Base):
    __tablename__ = "submission_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    submission_id: Mapped[int] = mapped_column(ForeignKey("submissions.id", ondelete="RESTRICT"), nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    submission: Mapped[Submission] = relationship("Submission", back_populates="files", lazy="selectin")
