import logging
import re
from datetime import timedelta
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BOT_TOKEN_PATTERN = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


class Settings(BaseSettings):
    # Telegram
    bot_token: str = Field(default="", alias="BOT_TOKEN")
    request_timeout: int = Field(default=30, alias="REQUEST_TIMEOUT")

    # Webhook / HTTP
    webhook_url: str = Field(default="", alias="WEBHOOK_URL")
    webhook_path: str = Field(default="/webhook", alias="WEBHOOK_PATH")
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=3000, alias="PORT")

    # Runtime mode
    environment: str = Field(default="production", alias="ENVIRONMENT")
    test_mode: bool = Field(default=False, alias="TEST_MODE")

    # Database
    db_path: str = Field(default="./data/groupsub.sqlite3", alias="DB_PATH")

    # Subscriptions
    subscription_days: int = Field(default=30, alias="SUBSCRIPTION_DAYS")
    test_subscription_minutes: int = Field(default=2, alias="TEST_SUBSCRIPTION_MINUTES")

    # Expiry sweep
    sweep_interval_minutes: int = Field(default=60, alias="SWEEP_INTERVAL_MINUTES")
    test_sweep_interval_seconds: int = Field(default=60, alias="TEST_SWEEP_INTERVAL_SECONDS")
    initial_sweep_delay_seconds: int = Field(default=5, alias="INITIAL_SWEEP_DELAY_SECONDS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        level = (value or "INFO").upper()
        if level not in valid_levels:
            logging.getLogger(__name__).warning(
                "Invalid LOG_LEVEL '%s', defaulting to INFO", value
            )
            return "INFO"
        return level

    @field_validator("environment")
    @classmethod
    def normalize_environment(cls, value: str) -> str:
        return (value or "production").strip().lower()

    @field_validator("webhook_path")
    @classmethod
    def normalize_webhook_path(cls, value: str) -> str:
        value = (value or "/webhook").strip()
        return value if value.startswith("/") else f"/{value}"

    _placeholder_markers = ("CHANGE_ME", "YOUR_SECRET_HERE", "REPLACE_ME", "INSERT_SECRET", "EXAMPLE")

    def _is_placeholder(self, value: str) -> bool:
        return any(marker in value for marker in self._placeholder_markers)

    @property
    def bot_token_valid(self) -> bool:
        return bool(
            self.bot_token
            and not self._is_placeholder(self.bot_token)
            and BOT_TOKEN_PATTERN.match(self.bot_token)
        )

    @property
    def webhook_url_valid(self) -> bool:
        url = self.webhook_url.strip()
        return bool(url and url.startswith(("http://", "https://")) and not self._is_placeholder(url))

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def fast_sweeps(self) -> bool:
        """Short sweep interval for test mode and local development."""
        return self.test_mode or self.is_development

    @property
    def subscription_duration(self) -> timedelta:
        if self.test_mode:
            return timedelta(minutes=self.test_subscription_minutes)
        return timedelta(days=self.subscription_days)

    @property
    def sweep_interval(self) -> timedelta:
        if self.fast_sweeps:
            return timedelta(seconds=self.test_sweep_interval_seconds)
        return timedelta(minutes=self.sweep_interval_minutes)

    @property
    def initial_sweep_delay(self) -> timedelta:
        return timedelta(seconds=max(0, self.initial_sweep_delay_seconds))

    @property
    def webhook_endpoint(self) -> str:
        return self.webhook_url.rstrip("/") + self.webhook_path

    def startup_problems(self) -> List[str]:
        """Return human-readable reasons the bot cannot start, empty when ready."""
        problems = []
        if not self.bot_token:
            problems.append("BOT_TOKEN is missing")
        elif not self.bot_token_valid:
            problems.append("BOT_TOKEN has an invalid format (expected <digits>:<secret>)")
        if not self.webhook_url:
            problems.append("WEBHOOK_URL is missing")
        elif not self.webhook_url_valid:
            problems.append("WEBHOOK_URL must be an http(s) URL")
        if self.subscription_days <= 0 or self.test_subscription_minutes <= 0:
            problems.append("Subscription duration must be positive")
        return problems


settings = Settings()
