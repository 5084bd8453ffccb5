"""Configuration package for folio."""

from folio.config.app_config import (
    AiConfig,
    AppConfig,
    ProviderConfig,
    StorageConfig,
    get_data_dir,
    get_provider_config,
    load_app_config,
)
from folio.config.cleanup_config import (
    CleanupConfig,
    HeadingPattern,
)

__all__ = [
    "AiConfig",
    "AppConfig",
    "ProviderConfig",
    "StorageConfig",
    "get_data_dir",
    "get_provider_config",
    "load_app_config",
    "CleanupConfig",
    "HeadingPattern",
]
