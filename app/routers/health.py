"""
Health check endpoints for Cloud Run and for diagnosing service dependencies.
"""
from fastapi import APIRouter, Depends

from app.config import get_settings, Settings

router = APIRouter(
    prefix="/health",
    tags=["health"],
)

VERSION = "1.0.0"


@router.get("")
async def health_check():
    """Health check endpoint for Cloud Run."""
    return {"status": "healthy", "version": VERSION}


@router.get("/integrations")
async def health_check_integrations(settings: Settings = Depends(get_settings)):
    """
    Which external integrations are configured. Never returns secret values.
    Unconfigured notification channels run in sandbox mode (logged, not sent).
    """
    integrations = {
        "bry": bool(settings.bry_client_id and settings.bry_client_secret),
        "supabase": bool(settings.supabase_url and settings.supabase_service_role_key),
        "storage": bool(settings.gcs_bucket),
        "resend": bool(settings.resend_api_key),
        "whatsapp": bool(
            settings.twilio_account_sid and settings.twilio_auth_token and settings.twilio_whatsapp_from
        ),
    }
    required = ("bry", "supabase", "storage")
    return {
        "status": "healthy" if all(integrations[name] for name in required) else "degraded",
        "bry_environment": settings.bry_environment,
        "bry_api_base_url": settings.get_bry_api_base_url(),
        "integrations": integrations,
    }
