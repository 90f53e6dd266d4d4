"""Configuration for the billing service using pydantic-settings."""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class AppEnv(StrEnum):
    DEV = "dev"
    PRODUCTION = "production"


class LegacyTomlSettingsSource(PydanticBaseSettingsSource):
    """Reads ``config/app_settings.toml`` and flattens its sections into field names."""

    def __init__(self, settings_cls: type[BaseSettings], toml_file: str | Path):
        super().__init__(settings_cls)
        self.toml_file = Path(toml_file)

    def get_field_value(self, field_name: str, field_data: Any) -> tuple[Any, str, bool]:
        # Not used in this source style
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not self.toml_file.exists():
            return {}

        import tomllib

        try:
            with open(self.toml_file, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return {}

        if not isinstance(data, dict):
            return {}

        flattened: dict[str, Any] = {}

        # [webhooks] section
        webhooks = data.get("webhooks", {})
        if isinstance(webhooks, dict):
            if "timestamp_tolerance_seconds" in webhooks:
                flattened["webhook_timestamp_tolerance_seconds"] = webhooks["timestamp_tolerance_seconds"]
            if "retention_days" in webhooks:
                flattened["processed_webhook_retention_days"] = webhooks["retention_days"]
            if "provider" in webhooks:
                flattened["payment_provider"] = webhooks["provider"]

        # [credits] section
        credits = data.get("credits", {})
        if isinstance(credits, dict):
            if "pro_per_month" in credits:
                flattened["pro_credits_per_month"] = credits["pro_per_month"]

        for k, v in data.items():
            if k not in {"webhooks", "credits"}:
                flattened[k] = v

        return flattened


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # --- Environment ---
    app_env: AppEnv = Field(
        default=AppEnv.PRODUCTION,
        validation_alias=AliasChoices("MARGIN_APP_ENV", "APP_ENV", "ENV"),
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> AppEnv:
        if v is None:
            return AppEnv.PRODUCTION
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in {"dev", "development", "local", "localhost"}:
                return AppEnv.DEV
        return AppEnv.PRODUCTION

    @field_validator("allowed_origins", "trusted_hosts", "proxy_trusted_hosts", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v_stripped = v.strip()
            if not v_stripped:
                return []
            if v_stripped.startswith("[") and v_stripped.endswith("]"):
                import json
                try:
                    return json.loads(v_stripped)
                except ValueError:
                    pass
            return [x.strip() for x in v_stripped.split(",") if x.strip()]
        return v or []

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    # --- Project Paths ---
    project_root: Path = PROJECT_ROOT

    # --- API & Security ---
    allowed_origins: Any = Field(default_factory=list, validation_alias="MARGIN_ALLOWED_ORIGINS")
    trusted_hosts: Any = Field(default_factory=list, validation_alias="MARGIN_TRUSTED_HOSTS")
    proxy_trusted_hosts: Any = Field(
        default_factory=lambda: ["127.0.0.1", "::1", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
        validation_alias="MARGIN_PROXY_TRUSTED_HOSTS",
    )
    force_https: bool = Field(default=False, validation_alias="MARGIN_FORCE_HTTPS")

    # --- Database ---
    database_url: str = Field(
        default="postgresql+psycopg://localhost/margin_dev",
        validation_alias=AliasChoices("MARGIN_DATABASE_URL", "DATABASE_URL"),
    )

    # --- Webhooks ---
    payment_provider: str = Field(default="paddle", validation_alias="MARGIN_PAYMENT_PROVIDER")
    webhook_timestamp_tolerance_seconds: int = Field(
        default=300,
        ge=0,
        validation_alias="MARGIN_WEBHOOK_TOLERANCE_SECONDS",
    )
    processed_webhook_retention_days: int = Field(
        default=7,
        ge=1,
        validation_alias="MARGIN_WEBHOOK_RETENTION_DAYS",
    )

    # --- Credits ---
    pro_credits_per_month: int = Field(default=30, ge=0, validation_alias="MARGIN_PRO_CREDITS_PER_MONTH")

    # --- Billing events (JSONL telemetry) ---
    events_enabled: bool | None = Field(default=None, validation_alias="MARGIN_EVENTS_ENABLED")
    events_log_path: Path = Field(
        default=PROJECT_ROOT / "logs" / "billing_events.jsonl",
        validation_alias="MARGIN_EVENTS_LOG_PATH",
    )

    def __init__(self, **values: Any) -> None:
        super().__init__(**values)
        # Apply secure defaults for production if hosts are missing
        if not self.is_dev:
            if not self.trusted_hosts:
                self.trusted_hosts = ["*.run.app", "*.a.run.app"]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Order of precedence:
        # 1. Constructor arguments
        # 2. Environment variables
        # 3. .env file
        # 4. config/app_settings.toml
        # 5. Secrets
        toml_path = os.getenv("MARGIN_APP_SETTINGS_FILE")
        if not toml_path:
            toml_path = str(PROJECT_ROOT / "config" / "app_settings.toml")

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            LegacyTomlSettingsSource(settings_cls, toml_file=toml_path),
            file_secret_settings,
        )


settings = Settings()
