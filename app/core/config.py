import json
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Delivery Automation Backend"
    env: str = "dev"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # SESSIONS
    session_ttl_seconds: int = Field(default=7 * 86_400, ge=60)

    # AUTOMATION
    automation_max_rules_per_tenant: int = Field(default=20, ge=1, le=1000)
    automation_dispatch_concurrency: int = Field(default=10, ge=1, le=100)
    automation_dispatch_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    automation_webhook_secret: str | None = None

    # MESSAGING
    messaging_provider_default: str = "solapi"
    solapi_base_url: str = "https://api.solapi.com"
    solapi_timeout_seconds: float = Field(default=4.0, gt=0, le=60)
    api_timeout_hint_ms: int = Field(default=30000, ge=1000, le=1_800_000)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("automation_webhook_secret", "cors_origin_regex", mode="before")
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("messaging_provider_default", mode="before")
    @classmethod
    def normalize_provider_name(cls, value: str | None) -> str:
        return (str(value or "solapi")).strip().lower() or "solapi"

    @field_validator("solapi_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str:
        return (str(value or "https://api.solapi.com")).strip().rstrip("/")

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if not self.automation_webhook_secret or len(self.automation_webhook_secret) < 16:
            raise ValueError("AUTOMATION_WEBHOOK_SECRET must be set to a strong value in production")

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if self.messaging_provider_default == "stub":
            raise ValueError("MESSAGING_PROVIDER_DEFAULT=stub is not allowed in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
