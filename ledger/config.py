"""
Configuration for the jar ledger service.

Loaded from environment variables (and an optional .env file) with
pydantic-settings. Each external collaborator gets its own settings group
and env prefix.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthSettings(BaseSettings):
    """Bearer token signing."""

    model_config = SettingsConfigDict(env_prefix="JWT_", env_file=".env", extra="ignore")

    secret: str = Field(
        default="dev-secret-change-me",
        description="HMAC secret used to sign access tokens"
    )
    algorithm: str = Field(default="HS256")
    expires_days: int = Field(default=7, ge=1, description="Token lifetime in days")


class AlgorandSettings(BaseSettings):
    """External ledger network (algod REST endpoint)."""

    model_config = SettingsConfigDict(env_prefix="ALGORAND_", env_file=".env", extra="ignore")

    server: str = Field(default="https://testnet-api.algonode.cloud")
    token: str = Field(default="", description="algod API token, empty for public nodes")
    network: str = Field(default="testnet")
    confirmation_rounds: int = Field(
        default=4,
        ge=1,
        description="Rounds to wait for a submitted commitment before giving up"
    )
    request_timeout: float = Field(default=10.0, gt=0)


class TwilioSettings(BaseSettings):
    """SMS gateway used for emergency requests. Optional."""

    model_config = SettingsConfigDict(env_prefix="TWILIO_", env_file=".env", extra="ignore")

    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    phone_number: Optional[str] = None
    api_base: str = Field(default="https://api.twilio.com/2010-04-01")

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.phone_number)


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_environment: str = Field(default="development")
    debug_mode: bool = Field(default=False)
    cors_origins: str = Field(
        default="http://localhost:5173",
        description="Comma-separated list of allowed origins"
    )
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render logs as JSON lines")
    session_idle_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds without a client message before a realtime session is dropped"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


class Settings(BaseSettings):
    """Root settings container."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth(self) -> AuthSettings:
        return AuthSettings()

    @property
    def algorand(self) -> AlgorandSettings:
        return AlgorandSettings()

    @property
    def twilio(self) -> TwilioSettings:
        return TwilioSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """Cached settings; call get_settings.cache_clear() to reload."""
    return Settings()
