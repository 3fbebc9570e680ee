"""
oralexam/orm/ai_grade.py
Aggregated AI grade for one completed seminar

Three independent grader samples (strict, balanced, generous) are stored
side by side with the suggested score so disagreement can be audited.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum as SQLEnum

from oralexam.orm.base import BaseModel


class AIGradeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AIGrade(BaseModel):
    __tablename__ = "ai_grades"

    seminar_id = Column(
        Integer,
        ForeignKey("seminars.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
        comment="One grade record per seminar"
    )

    status = Column(
        SQLEnum(AIGradeStatus),
        nullable=False,
        default=AIGradeStatus.PENDING,
        index=True
    )

    score_1 = Column(Integer, nullable=True, comment="Strict grader")
    reasoning_1 = Column(Text, nullable=True)
    score_2 = Column(Integer, nullable=True, comment="Balanced grader")
    reasoning_2 = Column(Text, nullable=True)
    score_3 = Column(Integer, nullable=True, comment="Generous grader")
    reasoning_3 = Column(Text, nullable=True)

    suggested_score = Column(Integer, nullable=True)
    scoring_method = Column(String(20), nullable=True, comment="average or median")

    error_message = Column(Text, nullable=True)
    model = Column(String(100), nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "seminar_id": self.seminar_id,
            "status": self.status.value if self.status else None,
            "scores": [self.score_1, self.score_2, self.score_3],
            "reasonings": [self.reasoning_1, self.reasoning_2, self.reasoning_3],
            "suggested_score": self.suggested_score,
            "scoring_method": self.scoring_method,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
