"""Application configuration loader.

Loads centralized configuration from <data>/config/folio.yaml, falling back
to built-in defaults when the file is missing.

The data root defaults to ``data`` and can be moved with FOLIO_DATA_DIR.

Usage:
    from folio.config.app_config import load_app_config, get_provider_config

    config = load_app_config()
    cleanup = config.cleanup_config()
    provider = get_provider_config("lmstudio")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from folio.config.cleanup_config import CleanupConfig

logger = structlog.get_logger(__name__)

DATA_DIR_ENV = "FOLIO_DATA_DIR"
CONFIG_RELATIVE_PATH = Path("config/folio.yaml")


def get_data_dir() -> Path:
    """Get the data root directory (FOLIO_DATA_DIR or ./data)."""
    return Path(os.environ.get(DATA_DIR_ENV, "data"))


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""

    base_url: str | None
    default_model: str
    api_key_env: str | None = None

    def get_api_key(self) -> str | None:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class AiConfig:
    """Defaults for the AI-assisted revision step."""

    default_provider: str = "lmstudio"
    timeout: int = 120
    # Longest span sent to the corrector in one call
    max_chunk_chars: int = 6000
    instructions: str = (
        "Fix OCR errors and obvious typos in the following book text. "
        "Do not modernize spelling, rephrase, summarize or add commentary. "
        "Keep *emphasis* and {smallcaps:...} markers exactly as written. "
        "Return only the corrected text."
    )


@dataclass
class StorageConfig:
    """Record and blob storage settings."""

    db_file: str = "db/folio.db"
    blobs_dir: str = "blobs"
    inline_threshold_bytes: int = 16384


@dataclass
class AppConfig:
    """Application-wide configuration."""

    cleanup: dict[str, Any] = field(default_factory=dict)
    storage: StorageConfig = field(default_factory=StorageConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    ai: AiConfig = field(default_factory=AiConfig)

    def cleanup_config(self, locale: str | None = None) -> CleanupConfig:
        """Build the engine configuration.

        Args:
            locale: Language of the book being cleaned. Used when the
                configured locale is "auto".
        """
        data = dict(self.cleanup)
        if data.get("locale", "auto") == "auto":
            data["locale"] = locale or "en"
        return CleanupConfig.from_dict(data)


# Module-level cache
_cached_config: AppConfig | None = None


def _get_defaults() -> dict[str, Any]:
    """Get default configuration values."""
    return {
        "cleanup": {
            "preserve_archaic": True,
            "locale": "auto",
            "boundary_confidence_threshold": 0.75,
            "short_line_ratio": 0.6,
        },
        "storage": {
            "db_file": "db/folio.db",
            "blobs_dir": "blobs",
            "inline_threshold_bytes": 16384,
        },
        "providers": {
            "lmstudio": {
                "base_url": "http://localhost:1234/v1",
                "default_model": "llama-3.2-3b-instruct",
                "api_key_env": None,
            },
            "openai": {
                "base_url": None,
                "default_model": "gpt-4o-mini",
                "api_key_env": "OPENAI_API_KEY",
            },
            "anthropic": {
                "base_url": None,
                "default_model": "claude-sonnet-4-20250514",
                "api_key_env": "ANTHROPIC_API_KEY",
            },
        },
        "ai": {
            "default_provider": "lmstudio",
            "timeout": 120,
            "max_chunk_chars": 6000,
        },
    }


def _parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse configuration dictionary into AppConfig object."""
    defaults = _get_defaults()

    cleanup = {**defaults["cleanup"], **(data.get("cleanup") or {})}

    storage_data = {**defaults["storage"], **(data.get("storage") or {})}
    storage = StorageConfig(
        db_file=storage_data["db_file"],
        blobs_dir=storage_data["blobs_dir"],
        inline_threshold_bytes=int(storage_data["inline_threshold_bytes"]),
    )

    providers = {}
    for name, pconfig in (data.get("providers") or defaults["providers"]).items():
        providers[name] = ProviderConfig(
            base_url=pconfig.get("base_url"),
            default_model=pconfig.get("default_model", "default"),
            api_key_env=pconfig.get("api_key_env"),
        )

    ai_data = data.get("ai") or {}
    ai = AiConfig(
        default_provider=ai_data.get("default_provider", "lmstudio"),
        timeout=ai_data.get("timeout", 120),
        max_chunk_chars=int(ai_data.get("max_chunk_chars", 6000)),
    )
    if ai_data.get("instructions"):
        ai.instructions = ai_data["instructions"]

    return AppConfig(cleanup=cleanup, storage=storage, providers=providers, ai=ai)


def load_app_config(force_reload: bool = False) -> AppConfig:
    """Load application config, falling back to defaults.

    Args:
        force_reload: If True, ignore cached config and reload from file.

    Returns:
        AppConfig object with all settings.
    """
    global _cached_config

    if _cached_config is not None and not force_reload:
        return _cached_config

    config_file = get_data_dir() / CONFIG_RELATIVE_PATH
    data: dict[str, Any]

    if config_file.exists():
        logger.debug("app_config.loading", source=str(config_file))
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    else:
        logger.info("app_config.using_defaults")
        data = _get_defaults()

    _cached_config = _parse_config(data)
    return _cached_config


def get_provider_config(provider: str) -> ProviderConfig | None:
    """Get configuration for a specific provider.

    Args:
        provider: Provider name (e.g., "lmstudio", "openai")

    Returns:
        ProviderConfig or None if provider not found.
    """
    config = load_app_config()
    return config.providers.get(provider)


def get_db_path() -> Path:
    """Resolve the SQLite database path under the data root."""
    return get_data_dir() / load_app_config().storage.db_file


def get_blobs_dir() -> Path:
    """Resolve the blob store directory under the data root."""
    return get_data_dir() / load_app_config().storage.blobs_dir


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when config is modified at runtime.
    """
    global _cached_config
    _cached_config = None
