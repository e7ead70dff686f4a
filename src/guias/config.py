import logging
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_HOURS = 24


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite:///guias.db")
    db_schema: Optional[str] = Field(None)
    db_pool_timeout: int = Field(30)
    redis_url: str = Field("redis://localhost:6379/0")
    schedule_frequency: int = Field(60 * 60 * 6)
    api_title: str = Field("Guias Backend API")
    rate_limit_enabled: bool = Field(True)
    create_reference_tables: bool = Field(False)

    jwt_secret: str
    jwt_issuer: str = Field("GuiasBackend")
    jwt_audience: str = Field("GuiasBackendAPI")
    jwt_algorithm: str = Field("HS256")
    jwt_expiration_hours: Optional[str] = Field(str(DEFAULT_TOKEN_LIFETIME_HOURS))
    bcrypt_rounds: int = Field(12)

    reset_code_ttl_minutes: int = Field(30)
    reset_code_retention_days: int = Field(7)
    revoked_token_sweep_seconds: int = Field(15 * 60)
    revocation_backend: str = Field("memory")

    email_backend: str = Field("smtp")
    email_sender: str = Field("no-reply@example.com")
    email_timeout_seconds: float = Field(20.0)
    smtp_server: str = Field("smtp.office365.com")
    smtp_port: int = Field(587)
    smtp_username: Optional[str] = Field(None)
    smtp_password: Optional[str] = Field(None)
    smtp_use_tls: bool = Field(True)
    resend_api_key: Optional[str] = Field(None)

    guia_prefix: str = Field("T002-")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def token_lifetime_hours(self) -> int:
        """Token lifetime, falling back to 24 hours when misconfigured."""
        try:
            hours = int(self.jwt_expiration_hours)
        except (TypeError, ValueError):
            hours = 0
        if hours <= 0:
            logger.warning(
                "JWT_EXPIRATION_HOURS=%r is not a positive integer, using %d hours",
                self.jwt_expiration_hours,
                DEFAULT_TOKEN_LIFETIME_HOURS,
            )
            return DEFAULT_TOKEN_LIFETIME_HOURS
        return hours


settings = Settings()
