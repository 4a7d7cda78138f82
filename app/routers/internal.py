"""
Internal API Router - for Cloud Scheduler and operators.
Not exposed to the public internet.
"""
import logging

from fastapi import APIRouter, Depends, Query

from app.auth import verify_internal_secret
from app.bry.client import BryClient, ProviderError, get_bry_client
from app.config import get_settings, Settings
from app.exceptions import ProviderException, ValidationException
from app.models import SweepResponse, WebhookRegistrationRequest
from app.repository import EnvelopeRepository, get_envelope_repository
from app.services.reconciler import EnvelopeReconciler, get_reconciler
from app.services.triggers import run_sweep

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/v1",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post(
    "/bry/sweep",
    response_model=SweepResponse,
    summary="Reconcile a batch of pending BRy envelopes",
)
async def bry_sweep(
    limit: int = Query(default=None, ge=1, le=500),
    reconciler: EnvelopeReconciler = Depends(get_reconciler),
    repository: EnvelopeRepository = Depends(get_envelope_repository),
):
    """
    Called by Cloud Scheduler. Picks up envelopes whose webhook was lost and
    envelopes whose signed file could not be stored yet.
    """
    try:
        outcome = await run_sweep(reconciler, repository, batch_size=limit)
    except ProviderError as e:
        # Authentication failed; nothing was processed
        raise ProviderException(str(e), upstream_status=e.status_code) from e

    return SweepResponse(
        success=True,
        processed=outcome.processed,
        changed=outcome.changed,
        failed=outcome.failed,
        skipped=outcome.skipped,
    )


@router.post(
    "/bry/webhook-registration",
    summary="Register this service's webhook URL at BRy",
)
async def bry_webhook_registration(
    request: WebhookRegistrationRequest,
    provider: BryClient = Depends(get_bry_client),
    settings: Settings = Depends(get_settings),
):
    url = request.url or settings.bry_webhook_url
    if not url:
        raise ValidationException("No webhook URL given and BRY_WEBHOOK_URL is not set")

    try:
        response = await provider.register_webhook(url)
    except ProviderError as e:
        raise ProviderException(str(e), upstream_status=e.status_code) from e

    logger.info(f"Webhook registration requested for {url}")
    return {"success": True, "url": url, "response": response}
