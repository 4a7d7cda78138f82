"""
BRy API Router - webhook, on-demand sync and evidence download.
Paths: /v1/bry/*
"""
from fastapi import APIRouter, Depends, Response

from app.auth import verify_admin_secret
from app.bry.client import ProviderError
from app.exceptions import AssemblyException, ProviderException
from app.models import (
    EvidenceRequest,
    SyncBatchResponse,
    SyncRequest,
    SyncSingleResponse,
    WebhookPayload,
    WebhookResponse,
)
from app.pdf.assembler import AssemblyError, EvidenceAssembler, get_evidence_assembler
from app.repository import EnvelopeRepository, get_envelope_repository
from app.services.reconciler import EnvelopeReconciler, get_reconciler
from app.services.triggers import handle_webhook, sync_document, sync_documents
from app.utils.formatting import content_disposition
from app.utils.logging import get_logger, set_context

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1/bry",
    tags=["bry"],
)


@router.post("/webhook", response_model=WebhookResponse)
async def bry_webhook(
    payload: WebhookPayload,
    reconciler: EnvelopeReconciler = Depends(get_reconciler),
    repository: EnvelopeRepository = Depends(get_envelope_repository),
):
    """
    BRy push notification.

    Public: the payload is only a hint of which envelope moved, every change
    is re-read from BRy. An envelope whose signed file could not be stored
    still answers 200 (artifactPending); the sweep retries it.
    """
    try:
        outcome = await handle_webhook(payload, reconciler, repository)
    except ProviderError as e:
        logger.error(f"Webhook reconciliation failed at BRy: {e}")
        raise ProviderException(str(e), upstream_status=e.status_code) from e

    return WebhookResponse(
        success=True,
        documents=outcome.documents,
        changed=outcome.changed,
        artifactPending=outcome.artifact_pending,
    )


@router.post(
    "/sync",
    dependencies=[Depends(verify_admin_secret)],
)
async def bry_sync(
    request: SyncRequest,
    reconciler: EnvelopeReconciler = Depends(get_reconciler),
):
    """Reconcile one document ({documentId}) or a batch ({documentIds})."""
    if request.document_ids:
        results = await sync_documents(reconciler, request.document_ids)
        return SyncBatchResponse(
            success=all(r.success for r in results),
            results=[r.to_dict() for r in results],
            totalChanged=sum(1 for r in results if r.changed),
        )

    try:
        result = await sync_document(reconciler, request.document_id)
    except ProviderError as e:
        raise ProviderException(str(e), upstream_status=e.status_code) from e

    return SyncSingleResponse(
        success=result.success,
        signedCount=result.signed_count,
        totalSigners=result.total_signers,
        completed=result.completed,
        changed=result.changed,
        artifactPending=result.artifact_pending,
        error=result.error,
    )


@router.post(
    "/evidence",
    dependencies=[Depends(verify_admin_secret)],
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}}},
)
async def bry_evidence(
    request: EvidenceRequest,
    assembler: EvidenceAssembler = Depends(get_evidence_assembler),
):
    """Evidence PDF of a document: BRy's unified report(s) or stamped PDF + local report."""
    set_context(document_id=request.document_id, trigger="evidence")
    try:
        evidence = await assembler.assemble(request.document_id)
    except ProviderError as e:
        raise ProviderException(str(e), upstream_status=e.status_code) from e
    except AssemblyError as e:
        raise AssemblyException(str(e)) from e

    return Response(
        content=evidence.content,
        media_type="application/pdf",
        headers={"Content-Disposition": content_disposition(evidence.filename)},
    )
