"""Settings for the netrounds backend."""

from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("netrounds-api", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    obs_enabled: bool = _env_field(True, "OBS_ENABLED")
    obs_metrics_public: bool = _env_field(False, "OBS_METRICS_PUBLIC")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    obs_admin_token: Optional[str] = _env_field(None, "OBS_ADMIN_TOKEN")
    cors_allow_origins: List[str] = _env_field([], "CORS_ALLOW_ORIGINS")

    # Periodic transition driver
    driver_enabled: bool = _env_field(True, "DRIVER_ENABLED")
    driver_interval_seconds: int = _env_field(60, "DRIVER_INTERVAL_SECONDS")

    # X-Test-Time header overrides "now" for a single request
    allow_time_override: Optional[bool] = _env_field(None, "ALLOW_TIME_OVERRIDE")
    # X-User-Id / X-User-Roles are set by the gateway in front of this service
    trust_identity_headers: Optional[bool] = _env_field(None, "TRUST_IDENTITY_HEADERS")

    default_timezone: str = _env_field("Europe/Bratislava", "DEFAULT_TIMEZONE")
    matching_seed: str = _env_field("netrounds", "MATCHING_SEED")

    # Keyed store retry policy
    store_max_retries: int = _env_field(3, "STORE_MAX_RETRIES")
    store_retry_delay_seconds: float = _env_field(0.5, "STORE_RETRY_DELAY_SECONDS")

    # Defaults for SystemParameters when none are stored
    safety_window_minutes: int = _env_field(6, "SAFETY_WINDOW_MINUTES")
    confirmation_window_minutes: int = _env_field(5, "CONFIRMATION_WINDOW_MINUTES")
    walking_time_minutes: int = _env_field(3, "WALKING_TIME_MINUTES")
    notification_early_minutes: int = _env_field(10, "NOTIFICATION_EARLY_MINUTES")
    notification_early_enabled: bool = _env_field(True, "NOTIFICATION_EARLY_ENABLED")
    confirmation_notification_enabled: bool = _env_field(True, "CONFIRMATION_NOTIFICATION_ENABLED")
    minimal_gap_between_rounds_minutes: int = _env_field(10, "MINIMAL_GAP_BETWEEN_ROUNDS_MINUTES")
    minimal_round_duration_minutes: int = _env_field(5, "MINIMAL_ROUND_DURATION_MINUTES")
    maximal_round_duration_minutes: int = _env_field(240, "MAXIMAL_ROUND_DURATION_MINUTES")
    default_group_size: int = _env_field(2, "DEFAULT_GROUP_SIZE")
    require_email_verification: bool = _env_field(False, "REQUIRE_EMAIL_VERIFICATION")

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("obs_log_level", mode="before")
    def _normalise_level(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return "INFO"
        return str(value).upper()

    # Environment helpers
    def is_prod(self) -> bool:
        return self.environment.lower() in ("prod", "production", "live")

    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development", "test")

    def time_override_allowed(self) -> bool:
        if self.allow_time_override is not None:
            return self.allow_time_override
        return self.is_dev()

    def identity_headers_trusted(self) -> bool:
        if self.trust_identity_headers is not None:
            return self.trust_identity_headers
        return self.is_dev()


settings = Settings()
