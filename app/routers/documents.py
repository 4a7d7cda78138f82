"""
Document signing API Router - provider envelopes and simple signatures.
Called by the web app backend with X-Admin-Secret.
"""
from fastapi import APIRouter, Depends, Path, Request

from app.auth import get_client_ip, verify_admin_secret
from app.bry.client import BryClient, ProviderError, get_bry_client
from app.exceptions import ProviderException
from app.models import (
    CreateEnvelopeRequest,
    CreateEnvelopeResponse,
    SimpleSignatureRequest,
    SimpleSignatureResponse,
)
from app.repository import EnvelopeRepository, get_envelope_repository
from app.services.envelopes import create_provider_envelope
from app.services.simple_signature import SimpleSignatureService, get_simple_signature_service
from app.storage import BlobStore, get_blob_store
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1",
    tags=["documents"],
    dependencies=[Depends(verify_admin_secret)],
)


@router.post("/envelopes", response_model=CreateEnvelopeResponse)
async def create_envelope(
    request: CreateEnvelopeRequest,
    repository: EnvelopeRepository = Depends(get_envelope_repository),
    provider: BryClient = Depends(get_bry_client),
    blob_store: BlobStore = Depends(get_blob_store),
):
    """Send a document (or its local group) to BRy and store the signing links."""
    try:
        return await create_provider_envelope(
            document_id=request.document_id,
            signature_mode=request.signature_mode,
            auth_options=request.authentication_options,
            repository=repository,
            provider=provider,
            blob_store=blob_store,
        )
    except ProviderError as e:
        raise ProviderException(str(e), upstream_status=e.status_code) from e


@router.post("/documents/{document_id}/simple-signature", response_model=SimpleSignatureResponse)
async def simple_signature(
    body: SimpleSignatureRequest,
    http_request: Request,
    document_id: str = Path(..., min_length=1),
    service: SimpleSignatureService = Depends(get_simple_signature_service),
):
    """Stamp one signer's simple signature onto the document."""
    evidence = body.evidence
    if not evidence.signature_ip:
        client_ip = get_client_ip(http_request)
        if client_ip != "unknown":
            evidence.signature_ip = client_ip

    result = await service.apply(document_id, body.signer_id, evidence)
    return SimpleSignatureResponse(
        success=True,
        changed=result.changed,
        signedFilePath=result.signed_file_path,
        signedCount=result.signed_count,
        totalSigners=result.total_signers,
        completed=result.completed,
    )
