"""
Simple (locally stamped) signatures.

Each signer's stamp is burned onto the latest stamped file. Stamps are
chained: the document row's stamped_file_url always points at the file
holding every stamp applied so far, and is only moved with a
compare-and-set on the value the stamp was drawn on. A lost race means
another signer's stamp landed in between; the file is reloaded and
stamped again. Each stamped file records the ids of the signers on it, so
a signer already on the latest file is never stamped a second time.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.config import Settings, get_settings
from app.exceptions import NotFoundError, StampingException, ValidationException
from app.models import EnvelopeRecord, SignatureEvidence, SignerRecord
from app.notifications import CompletionNotifier, get_completion_notifier
from app.pdf.stamper import (
    SimpleSignatureStamper,
    StampSigner,
    StampingError,
    get_stamper,
    stamped_signer_ids,
)
from app.repository import EnvelopeRepository, get_envelope_repository
from app.storage import BlobNotFoundError, BlobStore, get_blob_store
from app.utils.datetime_utils import path_timestamp, utc_now
from app.utils.formatting import sanitize_filename, strip_pdf_extension
from app.utils.logging import set_context

logger = logging.getLogger(__name__)

MAX_STAMP_ATTEMPTS = 3


@dataclass
class SimpleSignatureResult:
    changed: bool
    signed_count: int
    total_signers: int
    completed: bool
    signed_file_path: Optional[str] = None


def stamped_file_path(envelope: EnvelopeRecord, signer_index: int) -> str:
    """Object path of one stamped revision; carries the signer number."""
    owner = envelope.user_id or "unowned"
    name = sanitize_filename(strip_pdf_extension(envelope.name or ""))
    return f"{owner}/signed/{path_timestamp()}-{signer_index + 1}-{name}_assinado.pdf"


class SimpleSignatureService:
    """Applies one signer's simple signature to a document."""

    def __init__(
        self,
        repository: EnvelopeRepository,
        blob_store: BlobStore,
        notifier: CompletionNotifier,
        stamper: SimpleSignatureStamper,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.blob_store = blob_store
        self.notifier = notifier
        self.stamper = stamper
        self.settings = settings or get_settings()

    async def apply(
        self,
        document_id: str,
        signer_id: str,
        evidence: Optional[SignatureEvidence] = None,
    ) -> SimpleSignatureResult:
        """
        Raises:
            NotFoundError: unknown document or signer
            ValidationException: the document is signed through BRy
            StampingException: the PDF could not be stamped
        """
        set_context(document_id=document_id, signer_id=signer_id, trigger="simple_signature")

        envelope = self.repository.get_envelope(document_id)
        if envelope is None:
            raise NotFoundError("Document", document_id)
        if envelope.uses_provider:
            raise ValidationException("Document is signed through the signature provider")

        signers = self.repository.get_signers(document_id)
        index = next((i for i, s in enumerate(signers) if s.signer_id == signer_id), None)
        if index is None:
            raise NotFoundError("Signer", signer_id)
        signer = signers[index]
        total = envelope.total_signers or len(signers)

        if signer.is_signed or envelope.is_signed:
            logger.info(f"Signer {signer_id} already signed, nothing to do")
            return self._unchanged(envelope, total)

        signed_at = utc_now()
        stamped_ref = self._stamp(document_id, signer, index, signed_at)
        if stamped_ref is None:
            logger.info(f"Signer {signer_id} was signed by another request during stamping")
            return self._unchanged(self.repository.get_envelope(document_id) or envelope, total)

        columns = evidence.to_columns() if evidence else None
        changed = self.repository.mark_signer_signed(signer_id, signed_at, columns)
        if not changed:
            logger.warning(f"Signer {signer_id} was marked signed concurrently")

        signed_count = self.repository.count_signed(document_id)
        self.repository.update_signed_count(document_id, signed_count)
        result = SimpleSignatureResult(
            changed=changed,
            signed_count=signed_count,
            total_signers=total,
            completed=False,
            signed_file_path=stamped_ref,
        )

        if signed_count >= total:
            await self._complete(document_id, signed_count, result)
        return result

    def _unchanged(self, envelope: EnvelopeRecord, total: int) -> SimpleSignatureResult:
        return SimpleSignatureResult(
            changed=False,
            signed_count=envelope.signed_count,
            total_signers=total,
            completed=envelope.is_signed,
            signed_file_path=envelope.signed_artifact_ref or envelope.stamped_file_ref,
        )

    def _signer_is_signed(self, document_id: str, signer_id: str) -> bool:
        return any(s.signer_id == signer_id and s.is_signed for s in self.repository.get_signers(document_id))

    def _stamp(self, document_id: str, signer: SignerRecord, index: int, signed_at) -> Optional[str]:
        """
        Stamp onto the latest file and move stamped_file_url to the result.

        Returns the stamped file, or None when the signer turned out to be
        signed already. A file that already carries this signer's stamp
        (an earlier attempt swapped it in but never marked the signer) is
        returned as is.
        """
        stamp_signer = StampSigner(
            name=signer.name,
            national_id=signer.cpf,
            signed_at=signed_at,
            signer_id=signer.signer_id,
        )
        validation_url = self.settings.get_validation_url(document_id)

        for attempt in range(1, MAX_STAMP_ATTEMPTS + 1):
            current = self.repository.get_envelope(document_id)
            if current is None:
                raise NotFoundError("Document", document_id)
            if self._signer_is_signed(document_id, signer.signer_id):
                return None
            source_ref = current.stamped_file_ref or current.original_file_ref
            if not source_ref:
                raise ValidationException("Document has no file")

            try:
                source = self.blob_store.download_bytes(source_ref)
                if signer.signer_id in stamped_signer_ids(source):
                    logger.info(f"Signer #{index + 1} is already stamped on {source_ref}")
                    return source_ref
                stamped = self.stamper.stamp(source, index, stamp_signer, validation_url)
            except BlobNotFoundError as e:
                raise StampingException(str(e)) from e
            except StampingError as e:
                raise StampingException(str(e)) from e

            new_ref = self.blob_store.upload_bytes(stamped_file_path(current, index), stamped)
            if self.repository.swap_stamped_file(document_id, current.stamped_file_ref, new_ref):
                logger.info(f"Signer #{index + 1} stamped onto {source_ref} -> {new_ref}")
                return new_ref

            logger.info(f"Stamped file of {document_id} moved during stamping (attempt {attempt}), retrying")

        raise StampingException(
            f"Document {document_id} kept changing during stamping; gave up after {MAX_STAMP_ATTEMPTS} attempts"
        )

    async def _complete(self, document_id: str, signed_count: int, result: SimpleSignatureResult) -> None:
        # Re-read: a concurrent signer may have stamped on top of our file
        latest = self.repository.get_envelope(document_id)
        artifact_ref = latest.stamped_file_ref if latest else result.signed_file_path
        result.signed_file_path = artifact_ref
        result.completed = True

        if not self.repository.mark_envelope_signed(document_id, artifact_ref, signed_count):
            logger.info(f"Document {document_id} was marked signed by another invocation")
            return

        logger.info(f"Document {document_id} signed by all {signed_count} signer(s), artifact at {artifact_ref}")
        await self.notifier.notify_completed(latest, self.repository.get_signers(document_id))


def get_simple_signature_service() -> SimpleSignatureService:
    """Service wired to the production singletons."""
    return SimpleSignatureService(
        repository=get_envelope_repository(),
        blob_store=get_blob_store(),
        notifier=get_completion_notifier(),
        stamper=get_stamper(),
    )


async def apply_simple_signature(
    document_id: str,
    signer_id: str,
    evidence: Optional[SignatureEvidence] = None,
) -> SimpleSignatureResult:
    return await get_simple_signature_service().apply(document_id, signer_id, evidence)
