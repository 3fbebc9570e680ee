"""
oralexam/orm/seminar_slot.py
Bookable oral exam time window

max_concurrent bounds both the persisted bookings (sessions not failed/no-show)
and the number of exams that may be live at once.
"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey, CheckConstraint

from oralexam.orm.base import BaseModel
from oralexam.config.settings import settings


class SeminarSlot(BaseModel):
    __tablename__ = "seminar_slots"

    assignment_id = Column(
        Integer,
        ForeignKey("assignments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    window_start = Column(DateTime, nullable=False, comment="UTC start of the exam window")
    window_end = Column(DateTime, nullable=False, comment="UTC end of the exam window")

    max_concurrent = Column(
        Integer,
        nullable=False,
        default=settings.DEFAULT_SLOT_MAX_CONCURRENT,
        comment="Capacity for bookings and for simultaneously running exams"
    )

    __table_args__ = (
        CheckConstraint("max_concurrent > 0", name="ck_seminar_slot_capacity_positive"),
        CheckConstraint("window_end > window_start", name="ck_seminar_slot_window_order"),
    )

    def is_open(self, now) -> bool:
        return self.window_start <= now <= self.window_end

    def __repr__(self):
        return f"<SeminarSlot(id={self.id}, start={self.window_start}, max={self.max_concurrent})>"
