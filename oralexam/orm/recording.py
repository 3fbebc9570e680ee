"""
oralexam/orm/recording.py
Audio recording of a completed exam
"""
from sqlalchemy import Column, Integer, String, LargeBinary, ForeignKey

from oralexam.orm.base import BaseModel


class Recording(BaseModel):
    __tablename__ = "recordings"

    seminar_id = Column(
        Integer,
        ForeignKey("seminars.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )

    source_url = Column(String(1024), nullable=False)
    content_type = Column(String(100), nullable=False, default="audio/mpeg")
    size_bytes = Column(Integer, nullable=False, default=0)
    audio = Column(LargeBinary, nullable=True)
