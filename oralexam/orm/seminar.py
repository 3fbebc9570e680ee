"""
oralexam/orm/seminar.py
One student's oral exam booked against a slot

States: booked, waiting, in_progress, completed, failed, no_show.
Rows are created at booking time and never deleted once committed.
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum

from oralexam.orm.base import BaseModel


class SeminarStatus(str, Enum):
    BOOKED = "booked"
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_SHOW = "no_show"


# Sessions in these states do not hold a booking against the slot
RELEASED_STATES = (SeminarStatus.FAILED, SeminarStatus.NO_SHOW)

SUPPORTED_LANGUAGES = ("en", "sv")


class Seminar(BaseModel):
    __tablename__ = "seminars"

    submission_id = Column(
        Integer,
        ForeignKey("submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    slot_id = Column(
        Integer,
        ForeignKey("seminar_slots.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    language = Column(String(5), nullable=False, default="en")

    status = Column(
        SQLEnum(SeminarStatus),
        nullable=False,
        default=SeminarStatus.BOOKED,
        index=True
    )

    conversation_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Voice engine conversation id, set once the client connects"
    )

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<Seminar(id={self.id}, status={self.status})>"
