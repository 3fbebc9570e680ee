from .base import Base

from .user import User, UserRole
from .assignment import Assignment
from .submission import Submission, SubmissionStatus
from .review import Review

# Oral exam scheduling
from .seminar_slot import SeminarSlot
from .seminar import Seminar, SeminarStatus
from .transcript import Transcript
from .recording import Recording
from .ai_grade import AIGrade, AIGradeStatus
