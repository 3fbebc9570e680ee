"""
oralexam/orm/transcript.py
Full conversation transcript captured after a completed exam
"""
from sqlalchemy import Column, Integer, ForeignKey, JSON

from oralexam.orm.base import BaseModel


class Transcript(BaseModel):
    __tablename__ = "transcripts"

    seminar_id = Column(
        Integer,
        ForeignKey("seminars.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )

    turns = Column(
        JSON,
        nullable=False,
        default=list,
        comment="List of {role, message, time_in_call_secs}"
    )
