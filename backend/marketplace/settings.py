import json
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "local-services-marketplace"
    app_env: Literal["dev", "prod"] = Field("dev")
    testing: bool = Field(False)
    log_level: str = Field("INFO")
    cors_origins_raw: str | None = Field(None, validation_alias="cors_origins")
    database_url: str = Field("sqlite+aiosqlite:///./marketplace.db")
    database_pool_size: int = Field(5)
    database_max_overflow: int = Field(5)
    database_pool_timeout_seconds: float = Field(30.0)
    metrics_enabled: bool = Field(False)
    metrics_token: str | None = Field(None)
    gateway_mode: Literal["simulated", "off"] = Field("simulated")
    gateway_success_rate: float = Field(0.90)
    gateway_upi_success_rate: float = Field(0.95)
    gateway_refund_success_rate: float = Field(0.98)
    gateway_seed: int | None = Field(None)
    gateway_latency_seconds: float = Field(0.0)
    gateway_circuit_failure_threshold: int = Field(5)
    gateway_circuit_recovery_seconds: float = Field(30.0)
    gateway_timeout_seconds: float | None = Field(10.0, gt=0)
    push_mode: Literal["off", "webhook"] = Field("off")
    push_webhook_url: str | None = Field(None)
    push_webhook_token: str | None = Field(None)
    push_timeout_seconds: float = Field(5.0)
    push_circuit_failure_threshold: int = Field(5)
    push_circuit_recovery_seconds: float = Field(30.0)
    chat_history_limit: int = Field(500)
    chat_stream_keepalive_seconds: float = Field(15.0)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @staticmethod
    def _parse_list(raw: str | None) -> list[str]:
        if not raw:
            return []
        stripped = raw.strip()
        if stripped.startswith("["):
            try:
                return [str(item).strip() for item in json.loads(stripped) if str(item).strip()]
            except json.JSONDecodeError:
                pass
        return [item.strip() for item in stripped.split(",") if item.strip()]

    @field_validator(
        "gateway_success_rate",
        "gateway_upi_success_rate",
        "gateway_refund_success_rate",
    )
    @classmethod
    def validate_rate(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("gateway rates must be between 0 and 1")
        return value

    @model_validator(mode="after")
    def validate_prod_settings(self) -> "Settings":
        if self.app_env != "prod":
            return self
        if self.push_mode == "webhook" and not self.push_webhook_url:
            raise ValueError("PUSH_WEBHOOK_URL is required when PUSH_MODE=webhook in prod")
        if self.metrics_enabled and (not self.metrics_token or not self.metrics_token.strip()):
            raise ValueError("METRICS_TOKEN is required when METRICS_ENABLED=true in prod")
        if self.testing:
            raise ValueError("APP_ENV=prod disables testing mode")
        return self

    @property
    def cors_origins(self) -> list[str]:
        return self._parse_list(self.cors_origins_raw)

    @cors_origins.setter
    def cors_origins(self, value: list[str] | str | None) -> None:
        if isinstance(value, list):
            value = ",".join(value)
        self.cors_origins_raw = value


settings = Settings()
