"""
Entry points into reconciliation.

Webhook, scheduled sweep and on-demand sync only decide which documents to
reconcile and how to report; the work itself is EnvelopeReconciler.reconcile.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from app.bry.client import ProviderError
from app.exceptions import AppException, NotFoundError, ValidationException
from app.models import WebhookPayload
from app.repository import EnvelopeRepository
from app.services.reconciler import EnvelopeReconciler, PartialFailure, ReconcileResult
from app.utils.logging import fingerprint, set_context

logger = logging.getLogger(__name__)


@dataclass
class WebhookOutcome:
    documents: int
    changed: bool
    artifact_pending: bool
    results: List[ReconcileResult] = field(default_factory=list)


@dataclass
class SweepOutcome:
    processed: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0


async def handle_webhook(
    payload: WebhookPayload,
    reconciler: EnvelopeReconciler,
    repository: EnvelopeRepository,
) -> WebhookOutcome:
    """
    Reconcile every local document attached to the notified envelope.

    The payload only says which envelope moved; state always comes from a
    fresh provider fetch, so replayed or out-of-order events are harmless.
    """
    set_context(envelope_id=payload.uuid, trigger="webhook")
    logger.info(
        f"Webhook received: event={payload.event}, uuid={payload.uuid}, "
        f"signer={fingerprint(payload.signer_nonce, 'nonce_')}"
    )

    if not payload.uuid and not payload.signer_nonce:
        raise ValidationException("Webhook payload has no envelope uuid")

    envelopes = repository.find_by_provider_envelope(payload.uuid) if payload.uuid else []
    if not envelopes and payload.signer_nonce:
        envelopes = repository.find_by_signer_nonce(payload.signer_nonce)
    if not envelopes:
        raise NotFoundError("Envelope", payload.uuid or "-")

    token = await reconciler.provider.authenticate()
    outcome = WebhookOutcome(documents=len(envelopes), changed=False, artifact_pending=False)

    for envelope in envelopes:
        try:
            result = await reconciler.reconcile(envelope.document_id, token=token)
        except PartialFailure as e:
            logger.warning(f"Webhook left {envelope.document_id} pending: {e.message}")
            result = e.result
            outcome.artifact_pending = True
        outcome.changed = outcome.changed or result.changed
        outcome.results.append(result)

    logger.info(
        f"Webhook processed: {outcome.documents} document(s), changed={outcome.changed}, "
        f"artifact_pending={outcome.artifact_pending}"
    )
    return outcome


async def run_sweep(
    reconciler: EnvelopeReconciler,
    repository: EnvelopeRepository,
    batch_size: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> SweepOutcome:
    """
    Reconcile a bounded batch of pending envelopes, newest first.

    Backstop for lost webhooks and the retry path for failed artifact
    fetches. One token serves the whole batch; envelopes are spaced by a
    short delay for the provider's rate limit.
    """
    settings = reconciler.settings
    batch_size = batch_size or settings.bry_sweep_batch_size
    delay_seconds = settings.bry_sweep_delay_seconds if delay_seconds is None else delay_seconds

    set_context(trigger="sweep")
    candidates = repository.select_sweep_candidates(batch_size, settings.bry_artifact_max_attempts)
    outcome = SweepOutcome()
    if not candidates:
        logger.info("Sweep: no pending envelopes")
        return outcome

    logger.info(f"Sweep: {len(candidates)} pending envelope(s)")
    token = await reconciler.provider.authenticate()

    for index, envelope in enumerate(candidates):
        if index > 0 and delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        try:
            result = await reconciler.reconcile(envelope.document_id, token=token)
        except PartialFailure as e:
            outcome.processed += 1
            outcome.failed += 1
            if e.result.changed:
                outcome.changed += 1
            continue
        except ProviderError as e:
            logger.warning(f"Sweep: provider error for {envelope.document_id}: {e}")
            outcome.processed += 1
            outcome.failed += 1
            continue
        except NotFoundError:
            outcome.skipped += 1
            continue

        outcome.processed += 1
        if result.changed:
            outcome.changed += 1

    logger.info(
        f"Sweep finished: processed={outcome.processed}, changed={outcome.changed}, "
        f"failed={outcome.failed}, skipped={outcome.skipped}"
    )
    return outcome


async def sync_document(reconciler: EnvelopeReconciler, document_id: str) -> ReconcileResult:
    """On-demand sync for one document; errors propagate to the caller."""
    set_context(trigger="sync")
    try:
        return await reconciler.reconcile(document_id)
    except PartialFailure as e:
        return e.result


async def sync_documents(reconciler: EnvelopeReconciler, document_ids: List[str]) -> List[ReconcileResult]:
    """On-demand sync for a batch; every document gets its own result."""
    set_context(trigger="sync")
    unique_ids = list(dict.fromkeys(document_ids))
    token = await reconciler.provider.authenticate()

    results = []
    for document_id in unique_ids:
        try:
            results.append(await reconciler.reconcile(document_id, token=token))
        except PartialFailure as e:
            results.append(e.result)
        except ProviderError as e:
            results.append(ReconcileResult(document_id=document_id, success=False, error=str(e)))
        except AppException as e:
            results.append(ReconcileResult(document_id=document_id, success=False, error=e.message))
    return results
