"""
oralexam/orm/assignment.py
Programming assignment that submissions, slots and exams hang off
"""
from sqlalchemy import Column, Integer, String, Text

from oralexam.orm.base import BaseModel


class Assignment(BaseModel):
    __tablename__ = "assignments"

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    review_prompt = Column(
        Text,
        nullable=True,
        comment="Assignment specific instructions prepended to the code review prompt"
    )

    target_time_minutes = Column(
        Integer,
        nullable=True,
        comment="Intended oral exam length; falls back to the configured default"
    )

    max_time_minutes = Column(
        Integer,
        nullable=True,
        comment="Hard cap on oral exam length; falls back to the configured default"
    )

    def __repr__(self):
        return f"<Assignment(id={self.id}, title={self.title})>"
