"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
import re
from functools import lru_cache
from typing import Optional, List, Any

from pydantic_settings import BaseSettings
from pydantic import Field, model_validator, field_validator

logger = logging.getLogger(__name__)

BRY_HOMOLOGATION_API_URL = "https://easysign.hom.bry.com.br"
BRY_PRODUCTION_API_URL = "https://easysign.bry.com.br"
BRY_DEFAULT_AUTH_URL = "https://cloud.bry.com.br/token-service/jwt"


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")

        if not project:
            return None

        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")

    # Supabase (service role, the reconciler runs without a user session)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(default="", alias="SUPABASE_SERVICE_ROLE_KEY")

    # GCS
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")

    # BRy signing provider
    bry_client_id: str = Field(default="", alias="BRY_CLIENT_ID")
    bry_client_secret: str = Field(default="", alias="BRY_CLIENT_SECRET")
    bry_environment: str = Field(default="homologation", alias="BRY_ENVIRONMENT")
    bry_auth_url: str = Field(default=BRY_DEFAULT_AUTH_URL, alias="BRY_AUTH_URL")
    bry_api_base_url: str = Field(default="", alias="BRY_API_BASE_URL")
    bry_timeout_seconds: float = Field(default=30.0, alias="BRY_TIMEOUT_SECONDS")
    bry_client_name: str = Field(default="Eon Sign", alias="BRY_CLIENT_NAME")
    bry_webhook_url: str = Field(default="", alias="BRY_WEBHOOK_URL")

    # Sweep
    bry_sweep_batch_size: int = Field(
        default=50,
        alias="BRY_SWEEP_BATCH_SIZE",
        description="Max envelopes reconciled per scheduled sweep"
    )
    bry_sweep_delay_seconds: float = Field(
        default=0.2,
        alias="BRY_SWEEP_DELAY_SECONDS",
        description="Pause between envelopes during a sweep (provider rate limit)"
    )
    bry_artifact_max_attempts: int = Field(
        default=10,
        alias="BRY_ARTIFACT_MAX_ATTEMPTS",
        description="Failed signed-artifact fetches before the sweep stops retrying an envelope"
    )

    # Twilio
    twilio_account_sid: str = Field(default="", alias="TWILIO_ACCOUNT_SID")
    twilio_auth_token: str = Field(default="", alias="TWILIO_AUTH_TOKEN")
    twilio_whatsapp_from: str = Field(default="", alias="TWILIO_WHATSAPP_FROM")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="assinaturas@eonsign.com.br", alias="RESEND_FROM_EMAIL")

    # App
    app_url: str = Field(default="http://localhost:5173", alias="APP_URL")
    stamp_logo_path: str = Field(default="", alias="STAMP_LOGO_PATH")
    admin_api_secret: str = Field(default="", alias="ADMIN_API_SECRET")
    internal_api_secret: str = Field(default="", alias="INTERNAL_API_SECRET")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            # Semicolon is useful in Cloud Build where comma separates env vars
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_role_key": "SUPABASE_SERVICE_ROLE_KEY",
            "gcs_bucket": "GCS_BUCKET",
            "bry_client_id": "BRY_CLIENT_ID",
            "bry_client_secret": "BRY_CLIENT_SECRET",
            "twilio_account_sid": "TWILIO_ACCOUNT_SID",
            "twilio_auth_token": "TWILIO_AUTH_TOKEN",
            "twilio_whatsapp_from": "TWILIO_WHATSAPP_FROM",
            "resend_api_key": "RESEND_API_KEY",
            "admin_api_secret": "ADMIN_API_SECRET",
            "internal_api_secret": "INTERNAL_API_SECRET",
        }

        if not self.gcp_project_id and not os.environ.get("GOOGLE_CLOUD_PROJECT"):
            return

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_provider_config(self) -> 'Settings':
        """Log configuration problems that would only surface at first provider call."""
        if self.bry_environment not in ("homologation", "production"):
            logger.warning(
                f"Configuration Warning: BRY_ENVIRONMENT ('{self.bry_environment}') is unknown, "
                "homologation endpoints will be used"
            )

        if self.environment == "production":
            if not self.bry_client_id or not self.bry_client_secret:
                logger.error("CRITICAL: BRY_CLIENT_ID / BRY_CLIENT_SECRET not set in production!")
            if not self.app_url.startswith("https://"):
                logger.warning(
                    f"Configuration Warning: APP_URL ('{self.app_url}') "
                    "does not start with 'https://' in production. Validation QR codes will use it."
                )
            if self.bry_environment != "production":
                logger.warning("Configuration Warning: production service is talking to BRy homologation")

        return self

    def get_bry_api_base_url(self) -> str:
        """Provider API base URL, explicit override wins over the environment switch."""
        if self.bry_api_base_url:
            return self.bry_api_base_url.rstrip("/")
        if self.bry_environment == "production":
            return BRY_PRODUCTION_API_URL
        return BRY_HOMOLOGATION_API_URL

    def get_validation_url(self, document_id: str) -> str:
        """Public page where anyone can check a signed document."""
        return f"{self.app_url.rstrip('/')}/validar/{document_id}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# CORS Configuration
# =============================================================================

DEFAULT_CORS_ORIGINS = [
    "https://eonsign.com.br",
    "https://app.eonsign.com.br",
]

DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://localhost:8080",
    "http://127.0.0.1:5173",
]

# Preview deployments
CORS_ORIGIN_REGEX = r"https://.*\.lovableproject\.com"


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines default origins, ALLOWED_ORIGINS and, outside production,
    local development origins.
    """
    settings = get_settings()
    origins = set(DEFAULT_CORS_ORIGINS)

    if settings.allowed_origins:
        origins.update(settings.allowed_origins)

    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)

    return sorted(origins)


def is_allowed_origin(origin: Optional[str]) -> bool:
    """Check if an origin may receive CORS headers."""
    if not origin:
        return False

    if origin in get_cors_origins():
        return True

    if re.match(CORS_ORIGIN_REGEX, origin):
        return True

    if get_settings().environment != "production":
        if origin.startswith("http://localhost:") or origin.startswith("http://127.0.0.1:"):
            return True

    return False
