# contact_api/core/config.py
from __future__ import annotations

import secrets
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Server
    api_prefix: str = Field(default="/api", validation_alias="API_PREFIX")
    allowed_hosts: str = Field(default="*", validation_alias="ALLOWED_HOSTS")

    # State backend (rate limits, CSRF tokens, submission cache)
    state_backend: str = Field(default="memory", validation_alias="STATE_BACKEND")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    redis_max_connections: int = Field(default=50, validation_alias="REDIS_MAX_CONNECTIONS")
    redis_socket_timeout: int = Field(default=5, validation_alias="REDIS_SOCKET_TIMEOUT")
    redis_socket_connect_timeout: int = Field(default=5, validation_alias="REDIS_SOCKET_CONNECT_TIMEOUT")

    # Security
    csrf_secret: str = Field(default_factory=lambda: secrets.token_urlsafe(32), validation_alias="CSRF_SECRET")
    csrf_token_ttl_seconds: int = Field(default=3600, validation_alias="CSRF_TOKEN_TTL_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # CORS
    allowed_origins: str = Field(default="http://localhost:3000,http://127.0.0.1:3000", validation_alias="ALLOWED_ORIGINS")
    allowed_methods: str = Field(default="GET,POST,OPTIONS", validation_alias="ALLOWED_METHODS")
    allowed_headers: str = Field(default="Content-Type,X-CSRF-Token,X-Request-ID", validation_alias="ALLOWED_HEADERS")

    # Contact form rate limiting (per IP + email)
    contact_rate_limit_requests: int = Field(default=3, validation_alias="CONTACT_RATE_LIMIT_REQUESTS")
    contact_rate_limit_period: int = Field(default=3600, validation_alias="CONTACT_RATE_LIMIT_PERIOD")

    # Duplicate submissions
    submission_cache_ttl_seconds: int = Field(default=300, validation_alias="SUBMISSION_CACHE_TTL_SECONDS")

    # Zoho CRM
    zoho_crm_client_id: Optional[str] = Field(default=None, validation_alias="ZOHO_CRM_CLIENT_ID")
    zoho_crm_client_secret: Optional[str] = Field(default=None, validation_alias="ZOHO_CRM_CLIENT_SECRET")
    zoho_crm_refresh_token: Optional[str] = Field(default=None, validation_alias="ZOHO_CRM_REFRESH_TOKEN")
    zoho_crm_base_url: str = Field(default="https://www.zohoapis.com/crm/v2", validation_alias="ZOHO_CRM_BASE_URL")
    zoho_crm_region: Optional[str] = Field(default=None, validation_alias="ZOHO_CRM_REGION")
    zoho_crm_accounts_url: Optional[str] = Field(default=None, validation_alias="ZOHO_CRM_ACCOUNTS_URL")
    zoho_rate_limit: int = Field(default=10, validation_alias="ZOHO_RATE_LIMIT")
    crm_timeout_seconds: float = Field(default=10.0, validation_alias="CRM_TIMEOUT_SECONDS")

    # Circuit breaker around the CRM
    circuit_failure_threshold: int = Field(default=5, validation_alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_timeout: float = Field(default=60.0, validation_alias="CIRCUIT_RECOVERY_TIMEOUT")
    circuit_success_threshold: int = Field(default=3, validation_alias="CIRCUIT_SUCCESS_THRESHOLD")

    # Lead content
    lead_source: str = Field(default="Website Form", validation_alias="LEAD_SOURCE")
    lead_brand: str = Field(default="TKPay", validation_alias="LEAD_BRAND")

    # Monitoring
    sentry_dsn: Optional[str] = Field(default=None, validation_alias="SENTRY_DSN")

    @field_validator("environment")
    def validate_environment(cls, v):
        valid_envs = ["development", "testing", "staging", "production"]
        if v not in valid_envs:
            raise ValueError(f"environment must be one of {valid_envs}")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    def validate_log_format(cls, v):
        valid_formats = ["json", "console"]
        if v not in valid_formats:
            raise ValueError(f"log_format must be one of {valid_formats}")
        return v

    @field_validator("state_backend")
    def validate_state_backend(cls, v):
        valid_backends = ["memory", "redis"]
        if v not in valid_backends:
            raise ValueError(f"state_backend must be one of {valid_backends}")
        return v

    @field_validator("csrf_secret")
    def validate_csrf_secret(cls, v):
        if len(v) < 32:
            raise ValueError("csrf_secret must be at least 32 characters")
        return v

    @field_validator("zoho_rate_limit", "contact_rate_limit_requests")
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("rate limits must be at least 1")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"

    def origins(self) -> List[str]:
        if self.allowed_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def methods(self) -> List[str]:
        return [method.strip() for method in self.allowed_methods.split(",") if method.strip()]

    def headers(self) -> List[str]:
        return [header.strip() for header in self.allowed_headers.split(",") if header.strip()]

    def hosts(self) -> List[str]:
        return [host.strip() for host in self.allowed_hosts.split(",") if host.strip()]


settings = Settings()
