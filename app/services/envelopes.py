"""
Provider envelope creation.

A document (or every document of its local group) is sent to BRy as one
envelope; the returned ids and per-signer signing links are stored so
that webhooks and the sweep can find the document again.
"""
import logging
from typing import List, Optional

from app.bry.client import BryClient
from app.bry.responses import CreatedEnvelope, SignerLink
from app.exceptions import AppException, NotFoundError, ValidationException
from app.models import (
    DEFAULT_AUTH_OPTIONS,
    AuthenticationOption,
    CreateEnvelopeResponse,
    EnvelopeRecord,
    SignatureMode,
    SignerLinkResponse,
    SignerRecord,
)
from app.repository import EnvelopeRepository
from app.storage import BlobNotFoundError, BlobStore
from app.utils.formatting import strip_pdf_extension
from app.utils.logging import mask_email, set_context

logger = logging.getLogger(__name__)


def match_signer_links(signers: List[SignerRecord], links: List[SignerLink]) -> List[tuple]:
    """
    Pair local signers with the links BRy returned.

    Email match first; signers left over take the unclaimed links in order.
    """
    pairs = []
    unclaimed = list(links)
    unmatched = []
    for signer in signers:
        email = (signer.email or "").strip().lower()
        link = next(
            (candidate for candidate in unclaimed
             if email and (candidate.email or "").strip().lower() == email),
            None,
        )
        if link is None:
            unmatched.append(signer)
            continue
        unclaimed.remove(link)
        pairs.append((signer, link))

    for signer, link in zip(unmatched, unclaimed):
        pairs.append((signer, link))
    return pairs


def _envelope_title(documents: List[EnvelopeRecord]) -> str:
    name = strip_pdf_extension(documents[0].name or "Documento")
    if len(documents) > 1:
        # Grouped documents are named "<envelope> - <file>"
        return name.split(" - ")[0]
    return name


async def create_provider_envelope(
    document_id: str,
    signature_mode: SignatureMode,
    auth_options: Optional[List[AuthenticationOption]],
    repository: EnvelopeRepository,
    provider: BryClient,
    blob_store: BlobStore,
) -> CreateEnvelopeResponse:
    """
    Create the BRy envelope for a document and persist the provider ids.

    Raises:
        NotFoundError: unknown document
        ValidationException: already sent, no signers or no original file
        ProviderError: BRy rejected the envelope
    """
    set_context(document_id=document_id, trigger="create_envelope")

    envelope = repository.get_envelope(document_id)
    if envelope is None:
        raise NotFoundError("Document", document_id)

    documents = [envelope]
    if envelope.envelope_group_id:
        documents = repository.list_group(envelope.envelope_group_id) or [envelope]

    for doc in documents:
        if doc.provider_envelope_id:
            raise ValidationException(
                f"Document {doc.document_id} already has a provider envelope",
                {"envelopeId": doc.provider_envelope_id},
            )
        if not doc.original_file_ref:
            raise ValidationException(f"Document {doc.document_id} has no file")

    signers = repository.get_signers(documents[0].document_id)
    if not signers:
        raise ValidationException("Document has no signers")

    try:
        files = [blob_store.download_bytes(doc.original_file_ref) for doc in documents]
    except BlobNotFoundError as e:
        raise ValidationException(str(e)) from e

    options = [o.value for o in (auth_options or DEFAULT_AUTH_OPTIONS)]
    created: CreatedEnvelope = await provider.create_envelope(
        title=_envelope_title(documents),
        signers=[{"name": s.name, "email": s.email, "phone": s.phone} for s in signers],
        documents=files,
        auth_options=options,
        signature_mode=signature_mode.value,
    )
    set_context(envelope_id=created.envelope_id)

    claimed: List[EnvelopeRecord] = []
    for index, doc in enumerate(documents):
        if not repository.set_provider_envelope_id(doc.document_id, created.envelope_id):
            # Unbind the siblings claimed above from the orphan
            for sibling in claimed:
                repository.release_provider_envelope_id(sibling.document_id, created.envelope_id)
            logger.error(
                f"Document {doc.document_id} got a provider envelope concurrently; "
                f"BRy envelope {created.envelope_id} is orphaned, "
                f"released {[d.document_id for d in claimed]}"
            )
            raise AppException(
                status_code=409,
                code="CONFLICT",
                message=f"Document {doc.document_id} already has a provider envelope",
            )
        claimed.append(doc)
        if index < len(created.document_ids):
            repository.set_provider_document_id(doc.document_id, created.document_ids[index])

    links = match_signer_links(signers, created.signer_links)
    for doc in documents:
        doc_signers = signers if doc is documents[0] else repository.get_signers(doc.document_id)
        for signer, link in match_signer_links(doc_signers, created.signer_links):
            repository.save_signer_link(signer.signer_id, link.nonce, link.link)

    logger.info(
        f"Envelope {created.envelope_id} created for {len(documents)} document(s), "
        f"links for {[mask_email(signer.email) for signer, _ in links]}"
    )

    position = next((i for i, d in enumerate(documents) if d.document_id == document_id), 0)
    return CreateEnvelopeResponse(
        envelopeId=created.envelope_id,
        documentId=document_id,
        providerDocumentId=(
            created.document_ids[position] if position < len(created.document_ids) else None
        ),
        signers=[SignerLinkResponse(email=signer.email, link=link.link) for signer, link in links],
    )
