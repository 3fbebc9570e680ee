"""
oralexam/orm/submission.py
Student code submission

Status flow:
pending -> reviewing -> reviewed -> seminar_pending -> seminar_completed | approved | rejected
A seminar that fails or is marked no-show puts the submission back to reviewed.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, ForeignKey, Enum as SQLEnum

from oralexam.orm.base import BaseModel


class SubmissionStatus(str, Enum):
    PENDING = "pending"
    REVIEWING = "reviewing"
    REVIEWED = "reviewed"
    SEMINAR_PENDING = "seminar_pending"
    SEMINAR_COMPLETED = "seminar_completed"
    APPROVED = "approved"
    REJECTED = "rejected"


class Submission(BaseModel):
    __tablename__ = "submissions"

    student_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning student"
    )

    assignment_id = Column(
        Integer,
        ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    file_name = Column(String(255), nullable=False)

    content = Column(
        Text,
        nullable=False,
        comment="Source code; multi-file submissions use '// ===== name =====' separators"
    )

    status = Column(
        SQLEnum(SubmissionStatus),
        nullable=False,
        default=SubmissionStatus.PENDING,
        index=True
    )

    def __repr__(self):
        return f"<Submission(id={self.id}, status={self.status})>"
