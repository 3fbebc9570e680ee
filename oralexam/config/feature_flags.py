"""
Feature Flags Configuration

Toggles for the optional follow-up work done after an exam ends.
All feature flags are loaded from environment variables.
"""
import os


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


class FeatureFlags:
    """
    Feature flags for the application.

    To add a new feature flag:
    1. Add it here as a class property
    2. Load it from environment variable
    3. Check it with feature_flags.is_enabled(...)
    """

    # Enqueue the three-sample grading run once an exam completes
    FEATURE_AUTO_GRADING: bool = get_bool_env('FEATURE_AUTO_GRADING', True)

    # Download the audio recording after an exam completes
    FEATURE_RECORDING_CAPTURE: bool = get_bool_env('FEATURE_RECORDING_CAPTURE', True)

    # Run the no-show sweep on student/admin listings
    FEATURE_SWEEP_ON_READ: bool = get_bool_env('FEATURE_SWEEP_ON_READ', True)

    @classmethod
    def is_enabled(cls, flag_name: str) -> bool:
        """Check if a feature flag is enabled by name."""
        return getattr(cls, flag_name, False)

    @classmethod
    def get_all_flags(cls) -> dict:
        """Get all feature flags as a dictionary."""
        return {
            key: value
            for key, value in vars(cls).items()
            if key.startswith('FEATURE_') and isinstance(value, bool)
        }


# Singleton instance for easy importing
feature_flags = FeatureFlags()
