from oralexam.config.settings import settings, Settings
from oralexam.config.feature_flags import feature_flags, FeatureFlags
