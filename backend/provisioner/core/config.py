"""Application configuration using Pydantic BaseSettings"""
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

# Setup logging
logger = logging.getLogger("config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./provisioner.db"

    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Polar webhooks
    # Empty secret disables signature enforcement (events are still recorded)
    POLAR_WEBHOOK_SECRET: str = ""
    POLAR_SIGNATURE_TOLERANCE_SECONDS: int = 300

    # CRM (GoHighLevel / LeadConnector)
    CRM_API_KEY: str = ""
    CRM_API_URL: str = "https://services.leadconnectorhq.com"
    CRM_API_VERSION: str = "2021-07-28"
    CRM_COMPANY_ID: str = ""
    CRM_DEFAULT_TIMEZONE: str = "America/New_York"
    CRM_DEFAULT_COUNTRY: str = "US"
    CRM_DEFAULT_PASSWORD: str = "ChangeMe2026!"
    CRM_LOGIN_URL: str = "https://app.gohighlevel.com"
    CRM_REQUEST_TIMEOUT: float = 30.0  # seconds
    CRM_LOCATION_PROPAGATION_DELAY: float = 0.0  # seconds between location and user creation
    CRM_USER_CREATE_RETRIES: int = 0
    CRM_USER_CREATE_RETRY_BACKOFF: float = 1.0  # seconds, doubled per attempt

    # Email (Resend)
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = "noreply@example.com"
    EMAIL_SENDER_NAME: str = "Onboarding Team"
    BRAND_NAME: str = "AI Employee"

    # Pydantic V2 Config
    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("CRM_USER_CREATE_RETRIES")
    @classmethod
    def check_retries(cls, v):
        if v < 0:
            raise ValueError("CRM_USER_CREATE_RETRIES must be >= 0")
        return v

    @field_validator("POLAR_WEBHOOK_SECRET")
    @classmethod
    def check_webhook_secret(cls, v):
        if not v or v.strip() == "":
            logger.warning("POLAR_WEBHOOK_SECRET is not set; webhook signatures will not be enforced")
        return v


# Create global settings instance
settings = Settings()

ENVIRONMENT = settings.ENVIRONMENT


def validate_crm_config() -> tuple[bool, str]:
    """
    Validate CRM provisioning configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.CRM_API_KEY:
        return False, "CRM_API_KEY is not set in environment variables"

    if not settings.CRM_COMPANY_ID:
        return False, "CRM_COMPANY_ID is not set in environment variables"

    return True, ""
