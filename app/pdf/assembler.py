"""
Evidence package assembly.

Provider mode: BRy's unified report (signed document + BRy audit trail) for
every document of the provider envelope, in envelope order. A single
report is returned exactly as BRy produced it.

Local mode: the stamped PDF of every document in the local group, followed
by one generated evidence report covering all of them.

Provider-authored pages are only ever concatenated, never edited.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import fitz  # PyMuPDF

from app.bry.client import BryClient, get_bry_client
from app.config import Settings, get_settings
from app.exceptions import NotFoundError
from app.models import EnvelopeRecord
from app.pdf.evidence import (
    DocumentEvidenceInfo,
    EvidenceReportGenerator,
    SignerEvidenceInfo,
    get_evidence_generator,
)
from app.repository import EnvelopeRepository, get_envelope_repository
from app.services.reconciler import resolve_provider_document_id
from app.storage import BlobNotFoundError, BlobStore, get_blob_store
from app.utils.formatting import sanitize_filename, strip_pdf_extension

logger = logging.getLogger(__name__)


class AssemblyError(Exception):
    """An input PDF is missing or unreadable, or merging failed."""
    pass


@dataclass
class AssembledEvidence:
    content: bytes
    filename: str
    documents: int


def merge_pdfs(parts: List[bytes]) -> bytes:
    """Concatenate PDFs page by page. Raises AssemblyError on unreadable input."""
    merged = fitz.open()
    try:
        for index, part in enumerate(parts):
            try:
                with fitz.open(stream=part, filetype="pdf") as src:
                    merged.insert_pdf(src)
            except (RuntimeError, ValueError) as e:
                raise AssemblyError(f"PDF #{index + 1} could not be read: {e}") from e
        if merged.page_count == 0:
            raise AssemblyError("Nothing to merge")
        return merged.tobytes(garbage=3, deflate=True)
    finally:
        merged.close()


def evidence_filename(envelope: EnvelopeRecord, multi_document: bool) -> str:
    base = strip_pdf_extension(envelope.name or "")
    if multi_document:
        # Sub-documents are named "<envelope> - <file>"
        base = f"Envelope_{base.split(' - ')[0]}"
    return f"{sanitize_filename(base)}_evidencias.pdf"


class EvidenceAssembler:
    """Builds the downloadable evidence PDF for a document."""

    def __init__(
        self,
        repository: EnvelopeRepository,
        provider: BryClient,
        blob_store: BlobStore,
        report_generator: Optional[EvidenceReportGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.provider = provider
        self.blob_store = blob_store
        self.report_generator = report_generator or get_evidence_generator()
        self.settings = settings or get_settings()

    async def assemble(self, document_id: str) -> AssembledEvidence:
        """
        Raises:
            NotFoundError: no such document
            ProviderError: BRy unreachable or non-success
            AssemblyError: missing or unreadable PDF input
        """
        envelope = self.repository.get_envelope(document_id)
        if envelope is None:
            raise NotFoundError("Document", document_id)

        if envelope.uses_provider:
            return await self._assemble_provider(envelope)
        return self._assemble_local(envelope)

    async def _assemble_provider(self, envelope: EnvelopeRecord) -> AssembledEvidence:
        siblings = self.repository.find_by_provider_envelope(envelope.provider_envelope_id) or [envelope]
        token = await self.provider.authenticate()

        state = None
        reports = []
        for sibling in siblings:
            provider_document_id = sibling.provider_document_id
            if not provider_document_id:
                if state is None:
                    state = await self.provider.get_envelope_state(envelope.provider_envelope_id, token=token)
                provider_document_id = resolve_provider_document_id(self.repository, sibling, state)
            if not provider_document_id:
                raise AssemblyError(f"Provider document id unknown for {sibling.document_id}")

            report = await self.provider.download_unified_report(
                envelope.provider_envelope_id, provider_document_id, token=token
            )
            if not report:
                raise AssemblyError(f"Empty report for {sibling.document_id}")
            reports.append(report)

        content = reports[0] if len(reports) == 1 else merge_pdfs(reports)
        logger.info(
            f"Evidence assembled from {len(reports)} provider report(s) for envelope "
            f"{envelope.provider_envelope_id} ({len(content)} bytes)"
        )
        return AssembledEvidence(
            content=content,
            filename=evidence_filename(envelope, len(reports) > 1),
            documents=len(reports),
        )

    def _assemble_local(self, envelope: EnvelopeRecord) -> AssembledEvidence:
        group = [envelope]
        if envelope.envelope_group_id:
            group = self.repository.list_group(envelope.envelope_group_id) or [envelope]

        parts = []
        documents = []
        signers = []
        for doc in group:
            ref = doc.signed_artifact_ref or doc.stamped_file_ref
            if not ref:
                raise AssemblyError(f"Document {doc.document_id} has no signed file yet")
            try:
                parts.append(self.blob_store.download_bytes(ref))
            except BlobNotFoundError as e:
                raise AssemblyError(str(e)) from e

            documents.append(DocumentEvidenceInfo(
                id=doc.document_id,
                name=doc.name,
                signature_mode=doc.signature_mode.value,
                completed_at=doc.completion_notified_at,
            ))
            for signer in self.repository.get_signers(doc.document_id):
                signers.append(SignerEvidenceInfo(
                    name=signer.name,
                    cpf=signer.cpf,
                    email=signer.email,
                    phone=signer.phone,
                    signed_at=signer.signed_at,
                    ip_address=signer.signature_ip,
                    city=signer.signature_city,
                    state=signer.signature_state,
                    country=signer.signature_country,
                    signature_id=signer.signature_id,
                    document_name=doc.name,
                ))

        report = self.report_generator.generate(
            documents,
            signers,
            self.settings.get_validation_url(envelope.document_id),
        )
        content = merge_pdfs(parts + [report])
        logger.info(f"Evidence assembled from {len(parts)} local document(s) ({len(content)} bytes)")
        return AssembledEvidence(
            content=content,
            filename=evidence_filename(envelope, len(group) > 1),
            documents=len(group),
        )


def get_evidence_assembler() -> EvidenceAssembler:
    """Assembler wired to the production singletons."""
    return EvidenceAssembler(
        repository=get_envelope_repository(),
        provider=get_bry_client(),
        blob_store=get_blob_store(),
    )
