"""Configuration settings for ZBRS.

Paths resolve in this order:
1. Explicit argument (CLI --config / --db)
2. ZBRS_CONFIG / ZBRS_DATA_ROOT environment variables
3. ~/.zbrs

The optional YAML config file has two sections:

    security:
      allow_http: false
      blocked_domains: [evil.example.com]
    sources:
      - url: https://repositories.zaphnath.org/index.json
        name: Official Zaphnath Repositories
        type: official
        enabled: true

A missing file means defaults. Anything else that is wrong raises ConfigError.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from zbrs.repository.discovery import (
    DEFAULT_CACHE_TTL,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DEFAULT_JSON_TIMEOUT,
    USER_AGENT,
    default_sources,
)
from zbrs.repository.models import RepositorySource
from zbrs.repository.policy import SecurityPolicy

DATA_ROOT_ENV = "ZBRS_DATA_ROOT"
CONFIG_ENV = "ZBRS_CONFIG"


class ConfigError(Exception):
    """Raised when the config file cannot be used."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


def default_data_root() -> Path:
    env_root = os.environ.get(DATA_ROOT_ENV)
    if env_root:
        return Path(env_root).expanduser()
    return Path.home() / ".zbrs"


@dataclass
class Settings:
    """Application settings."""

    data_root: Path = field(default_factory=default_data_root)
    db_path: Path | None = None
    config_path: Path | None = None

    # Network
    json_timeout: float = DEFAULT_JSON_TIMEOUT
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    cache_ttl: float = DEFAULT_CACHE_TTL
    user_agent: str = USER_AGENT

    # Loaded from the config file
    security: SecurityPolicy = field(default_factory=SecurityPolicy)
    sources: list[RepositorySource] = field(default_factory=default_sources)

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = self.data_root / "zbrs.db"
        if self.config_path is None:
            env_config = os.environ.get(CONFIG_ENV)
            self.config_path = (
                Path(env_config).expanduser()
                if env_config
                else self.data_root / "config.yaml"
            )

    def discovery_options(self) -> dict:
        """Keyword arguments for RepositoryDiscoveryService."""
        return {
            "cache_ttl": self.cache_ttl,
            "json_timeout": self.json_timeout,
            "download_timeout": self.download_timeout,
            "user_agent": self.user_agent,
        }


def load_settings(
    config_path: Path | None = None, db_path: Path | None = None
) -> Settings:
    """Build Settings and apply the YAML config file if it exists."""
    settings = Settings(config_path=config_path, db_path=db_path)
    path = settings.config_path

    if not path.exists():
        return settings

    try:
        with open(path, encoding="utf-8-sig") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config: {e}", path) from e

    if data is None:
        return settings
    if not isinstance(data, dict):
        raise ConfigError("Config must be a YAML mapping", path)

    unknown = set(data) - {"security", "sources"}
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}", path)

    security = data.get("security")
    if security is not None:
        if not isinstance(security, dict):
            raise ConfigError("'security' must be a mapping", path)
        try:
            settings.security = SecurityPolicy.from_dict(security)
        except ValidationError as e:
            raise ConfigError(f"Invalid security settings: {e}", path) from e

    sources = data.get("sources")
    if sources is not None:
        if not isinstance(sources, list):
            raise ConfigError("'sources' must be a list", path)
        try:
            settings.sources = [RepositorySource.from_dict(s) for s in sources]
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigError(f"Invalid source entry: {e}", path) from e
        for source in settings.sources:
            if source.type not in ("official", "third-party", "local"):
                raise ConfigError(f"Invalid source type: {source.type}", path)

    return settings
