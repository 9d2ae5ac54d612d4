"""Settings and configuration management."""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import ClassVar

from pydantic import Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

# Regex for ${ENV_VAR} placeholders in YAML values
_ENV_VAR_PLACEHOLDER_RE = re.compile(r"^\$\{[A-Z_][A-Z0-9_]*\}$")

# YAML config search paths (checked in order, first found wins)
_YAML_SEARCH_PATHS = [
    Path("shopify.yaml"),
    Path("config/shopify.yaml"),
    Path.home() / ".config" / "shopify-dispatch" / "shopify.yaml",
]


def _find_yaml_config() -> Path | None:
    """Find the first shopify.yaml in search paths."""
    for path in _YAML_SEARCH_PATHS:
        if path.is_file():
            return path
    return None


class Settings(BaseSettings):
    """Application settings.

    Priority chain: init kwargs > env vars > .env file > shopify.yaml > defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Class-level cache for the resolved YAML path (not a pydantic field)
    _yaml_path: ClassVar[Path | None] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Priority: init kwargs > env vars > .env file > shopify.yaml > file secrets > defaults
        """
        sources: list[PydanticBaseSettingsSource] = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        yaml_path = _find_yaml_config()
        cls._yaml_path = yaml_path
        if yaml_path:
            sources.append(
                YamlConfigSettingsSource(
                    settings_cls,
                    yaml_file=yaml_path,
                    yaml_file_encoding="utf-8",
                )
            )

        sources.append(file_secret_settings)
        return tuple(sources)

    @model_validator(mode="before")
    @classmethod
    def _resolve_env_var_placeholders(cls, data: dict) -> dict:
        """Strip unresolved ${VAR} placeholders so they become None.

        YAML files may contain ${ENV_VAR} syntax for secrets. When the env var
        is not set, the raw placeholder string would pollute the field value.
        This validator converts those to None so the field default applies.
        """
        if not isinstance(data, dict):
            return data
        for key, value in data.items():
            if isinstance(value, str) and _ENV_VAR_PLACEHOLDER_RE.match(value):
                data[key] = None
        return data

    # Shop credentials
    shopify_shop_name: str | None = Field(None, description="Shop subdomain (<name>.myshopify.com)")
    shopify_api_key: str | None = Field(None, description="Private app API key")
    shopify_password: str | None = Field(None, description="Private app password")
    shopify_access_token: str | None = Field(None, description="OAuth access token for public apps")

    # Requests
    request_timeout: float = Field(60.0, description="Request timeout in seconds")

    # Automatic rate limiting
    autolimit_enabled: bool = Field(False, description="Route requests through the dispatcher")
    autolimit_calls: int = Field(2, ge=1, description="Calls allowed per interval")
    autolimit_interval_ms: int = Field(1000, ge=0, description="Slot release delay in milliseconds")
    autolimit_queue_size: int | None = Field(
        None, ge=1, description="Max calls waiting for a slot (unbounded when unset)"
    )

    # Token bucket
    bucket_size: int = Field(38, ge=1, description="Token bucket capacity")
    bucket_refill_amount: int = Field(2, ge=1, description="Tokens added per refill")
    bucket_refill_interval_ms: int = Field(1000, ge=1, description="Refill interval in ms")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field("text", description="Log format: 'text' or 'json'")
    sanitize_logs: bool = Field(True, description="Sanitize credentials from logs")

    @property
    def yaml_config_path(self) -> Path | None:
        """YAML file the settings were loaded from, if any."""
        return type(self)._yaml_path

    def has_credentials(self) -> bool:
        """Check whether any credential style is configured."""
        return bool(self.shopify_access_token) or bool(
            self.shopify_api_key and self.shopify_password
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

