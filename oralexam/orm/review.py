"""
oralexam/orm/review.py
LLM code review of a submission

The latest review by creation time is the authoritative one used to run
and grade the oral exam.
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, JSON

from oralexam.orm.base import BaseModel


class Review(BaseModel):
    __tablename__ = "reviews"

    submission_id = Column(
        Integer,
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    feedback = Column(Text, nullable=False, comment="Free-text critique")

    issues = Column(
        JSON,
        nullable=False,
        default=list,
        comment="List of {type, severity, line, message}"
    )

    discussion_plan = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Ordered topics with questions and expected answers"
    )

    model = Column(String(100), nullable=True)

    repaired = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True when the provider output was truncated and structurally repaired"
    )

    def __repr__(self):
        return f"<Review(id={self.id}, submission_id={self.submission_id})>"
