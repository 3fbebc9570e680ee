"""
oralexam
Admission control and session lifecycle backend for oral examinations.
"""

__version__ = "1.0.0"
