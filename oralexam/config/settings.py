"""
oralexam/config/settings.py
Runtime settings loaded from the environment.

Every knob lives here as a class attribute so services can import a single
`settings` object. Values are read once at import time after the .env file
has been loaded.
"""
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable."""
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return int(value)


def get_list_env(key: str) -> List[str]:
    """Get a comma separated list from environment variable."""
    value = os.getenv(key, "")
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    Application settings.

    Capacity and lease lengths:
    - REVIEW_SEMAPHORE_MAX / REVIEW_LEASE_TTL_SECONDS bound concurrent LLM reviews per assignment
    - EXAM_LEASE_TTL_SECONDS matches the hard cap on exam duration
    - DEFAULT_SLOT_MAX_CONCURRENT is used when a slot is created without a capacity
    """

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    ALLOWED_ORIGINS: List[str] = get_list_env("ALLOWED_ORIGINS")

    # Storage
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./oralexam.db")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "oralexam")

    # Capacity gates
    REVIEW_SEMAPHORE_MAX: int = get_int_env("REVIEW_SEMAPHORE_MAX", 5)
    REVIEW_LEASE_TTL_SECONDS: int = get_int_env("REVIEW_LEASE_TTL_SECONDS", 5 * 60)
    EXAM_LEASE_TTL_SECONDS: int = get_int_env("EXAM_LEASE_TTL_SECONDS", 35 * 60)
    DEFAULT_SLOT_MAX_CONCURRENT: int = get_int_env("DEFAULT_SLOT_MAX_CONCURRENT", 8)

    # LLM provider (OpenAI compatible chat completions)
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    REVIEW_MODEL: str = os.getenv("REVIEW_MODEL", "gpt-4o")
    GRADING_MODEL: str = os.getenv("GRADING_MODEL", "gpt-4o")
    REVIEW_MAX_COMPLETION_TOKENS: int = get_int_env("REVIEW_MAX_COMPLETION_TOKENS", 16384)
    LLM_TIMEOUT_SECONDS: int = get_int_env("LLM_TIMEOUT_SECONDS", 180)

    # Voice provider
    ELEVENLABS_API_KEY: Optional[str] = os.getenv("ELEVENLABS_API_KEY")
    ELEVENLABS_AGENT_ID: Optional[str] = os.getenv("ELEVENLABS_AGENT_ID")
    ELEVENLABS_API_URL: str = os.getenv("ELEVENLABS_API_URL", "https://api.elevenlabs.io/v1")
    ELEVENLABS_WEBHOOK_SECRET: Optional[str] = os.getenv("ELEVENLABS_WEBHOOK_SECRET")

    # Grading
    GRADING_SPREAD_THRESHOLD: int = get_int_env("GRADING_SPREAD_THRESHOLD", 20)
    GRADING_STALE_AFTER_SECONDS: int = get_int_env("GRADING_STALE_AFTER_SECONDS", 15 * 60)

    # Exam defaults when an assignment does not set its own
    DEFAULT_TARGET_TIME_MINUTES: int = get_int_env("DEFAULT_TARGET_TIME_MINUTES", 30)
    DEFAULT_MAX_TIME_MINUTES: int = get_int_env("DEFAULT_MAX_TIME_MINUTES", 35)

    # Periodic no-show sweep inside the API process, 0 disables it
    SWEEP_INTERVAL_SECONDS: int = get_int_env("SWEEP_INTERVAL_SECONDS", 0)

    @classmethod
    def is_development(cls) -> bool:
        return cls.ENVIRONMENT == "development"


settings = Settings()
