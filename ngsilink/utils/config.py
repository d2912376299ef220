"""
NGSILink Configuration Module

Centralized configuration management with validation using Pydantic Settings.
Loads configuration from environment variables and .env files.
"""

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ngsilink.models.schemas import (
    DataModel,
    DuplicateAttributePolicy,
    ExpressionLanguage,
)

DEFAULT_JSONLD_CONTEXT = "https://uri.etsi.org/ngsi-ld/v1/ngsi-ld-core-context.jsonld"


class ContextBrokerSettings(BaseSettings):
    """Context Broker connection configuration."""

    model_config = SettingsConfigDict(env_prefix="CB_")

    url: str = Field(default="http://localhost:1026")
    data_model: DataModel = Field(default=DataModel.LEGACY)
    jsonld_context: Annotated[list[str], NoDecode] = Field(default=[DEFAULT_JSONLD_CONTEXT])
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("jsonld_context", mode="before")
    @classmethod
    def parse_jsonld_context(cls, v):
        if isinstance(v, str):
            return [c.strip() for c in v.split(";") if c.strip()]
        return v

    @field_validator("data_model", mode="before")
    @classmethod
    def parse_data_model(cls, v):
        # "v2" and "ngsi-ld" are accepted as aliases of the two models
        aliases = {"v2": "legacy", "ngsiv2": "legacy", "ngsi-ld": "ld", "linked-data": "ld"}
        if isinstance(v, str):
            return aliases.get(v.lower(), v.lower())
        return v


class TranslationSettings(BaseSettings):
    """Attribute pipeline configuration."""

    model_config = SettingsConfigDict(env_prefix="IOTA_")

    timestamp: bool = Field(default=False)
    name_conjunction: str | None = Field(default=None)
    expression_language: ExpressionLanguage = Field(default=ExpressionLanguage.LEGACY)
    numeric_default: float = Field(default=0)
    duplicate_attribute_policy: DuplicateAttributePolicy = Field(
        default=DuplicateAttributePolicy.DATASET
    )

    @field_validator("name_conjunction", mode="before")
    @classmethod
    def parse_name_conjunction(cls, v):
        if isinstance(v, str) and v.lower() in ("", "null"):
            return None
        return v


class MetricsSettings(BaseSettings):
    """Prometheus metrics configuration."""

    model_config = SettingsConfigDict(env_prefix="METRICS_")

    enabled: bool = Field(default=True)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: str = Field(default="development", validation_alias="NGSILINK_ENV")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, validation_alias="JSON_LOGS")

    # Sub-configurations
    context_broker: ContextBrokerSettings = Field(default_factory=ContextBrokerSettings)
    translation: TranslationSettings = Field(default_factory=TranslationSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        valid_envs = ["development", "staging", "production", "test"]
        if v.lower() not in valid_envs:
            raise ValueError(f"env must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.env == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.
    Settings are loaded once and cached for performance.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Reload settings (clears cache).
    Use this when environment variables have changed.
    """
    get_settings.cache_clear()
    return get_settings()
