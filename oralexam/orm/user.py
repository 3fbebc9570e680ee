"""
oralexam/orm/user.py
Students and course staff
"""
from enum import Enum

from sqlalchemy import Column, String, Enum as SQLEnum

from oralexam.orm.base import BaseModel


class UserRole(str, Enum):
    student = "student"
    admin = "admin"


class User(BaseModel):
    __tablename__ = "users"

    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.student)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"
