"""Marketchat application configuration.

Loads settings from two YAML files:
  * marketchat.settings.yaml: non-secret configuration
  * marketchat.secrets.yaml: secrets (never committed)

Both files are optional; missing files fall back to model defaults.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("marketchat.settings.yaml")
SECRETS_FILE  = Path("marketchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class ChatSettings(BaseModel):
    """Chat store and delivery tuning."""
    db_path:                     str = "chats.duckdb"
    notification_preview_length: int = 80
    max_message_length:          int = 5000

    @field_validator("notification_preview_length", "max_message_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value


class DirectorySettings(BaseModel):
    """Backing database for user / product / order lookups."""
    db_path: str = "directory.duckdb"


class AuthSettings(BaseModel):
    admin_role:        str = "admin"
    token_query_param: str = "token"
    leeway_seconds:    int = 0


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    chat:      ChatSettings      = Field(default_factory=ChatSettings)
    directory: DirectorySettings = Field(default_factory=DirectorySettings)
    auth:      AuthSettings      = Field(default_factory=AuthSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    secrets:   Secrets           = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, chat.db=%s, directory.db=%s)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.chat.db_path,
        app_settings.directory.db_path,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the process-wide settings (used by tests and embedding apps)."""
    global _config
    _config = config


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads from disk."""
    global _config
    _config = None
