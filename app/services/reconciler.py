"""
Envelope reconciliation.

One function, `EnvelopeReconciler.reconcile`, brings a local document in
line with the provider's view of its envelope. Webhooks, the scheduled
sweep and on-demand sync all call it; they differ only in how they pick
document ids and shape the response.

Guarantees, all enforced by conditional writes in the repository:
- a signer goes pending -> signed once, and its signed_at is never rewritten
- signed_by always equals the count of signed signer rows after a run
- a document is marked signed only together with a stored artifact, and
  only when the provider says the envelope is complete AND every local
  signer is signed
- only the invocation that wins the document transition notifies
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.bry.client import BryClient, get_bry_client
from app.bry.responses import ProviderEnvelopeState, ProviderSigner
from app.config import Settings, get_settings
from app.exceptions import NotFoundError
from app.models import EnvelopeRecord, SignerRecord
from app.notifications import CompletionNotifier, get_completion_notifier
from app.repository import EnvelopeRepository, get_envelope_repository
from app.storage import BlobStore, get_blob_store
from app.utils.datetime_utils import utc_now
from app.utils.formatting import strip_accents, strip_pdf_extension
from app.utils.logging import fingerprint, mask_email, set_context

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    document_id: str
    success: bool = True
    changed: bool = False
    signed_count: int = 0
    total_signers: int = 0
    completed: bool = False
    artifact_pending: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "documentId": self.document_id,
            "success": self.success,
            "changed": self.changed,
            "signedCount": self.signed_count,
            "totalSigners": self.total_signers,
            "completed": self.completed,
        }
        if self.artifact_pending:
            data["artifactPending"] = True
        if self.error:
            data["error"] = self.error
        return data


class PartialFailure(Exception):
    """
    Signer progress was saved but the signed artifact could not be stored.

    The document stays pending; any later reconciliation retries the fetch.
    """

    def __init__(self, result: ReconcileResult, message: str):
        super().__init__(message)
        self.result = result
        self.message = message


def signed_artifact_path(envelope: EnvelopeRecord) -> str:
    owner = envelope.user_id or "unowned"
    return f"{owner}/{envelope.document_id}_signed.pdf"


def _name_key(name: Optional[str]) -> str:
    return strip_accents(strip_pdf_extension((name or "").strip())).lower()


def match_local_signer(
    provider_signer: ProviderSigner,
    local_signers: List[SignerRecord],
) -> Optional[SignerRecord]:
    """Nonce match when both sides carry one, else case-insensitive email."""
    if provider_signer.nonce:
        for local in local_signers:
            if local.provider_nonce and local.provider_nonce == provider_signer.nonce:
                return local

    email = provider_signer.email_key
    if email:
        for local in local_signers:
            if local.email and local.email.strip().lower() == email:
                return local
    return None


def resolve_provider_document_id(
    repository: EnvelopeRepository,
    envelope: EnvelopeRecord,
    state: ProviderEnvelopeState,
) -> Optional[str]:
    """
    Provider id of a local document inside its envelope, cached on the row once found.

    Resolution order: name match, the only document of a single-document
    envelope, the document's position among the local documents sharing
    the envelope.
    """
    if envelope.provider_document_id:
        return envelope.provider_document_id

    documents = [d for d in state.documents if d.document_id]
    if not documents:
        return None

    resolved = None
    wanted = _name_key(envelope.name)
    if wanted:
        for doc in documents:
            if _name_key(doc.name) == wanted:
                resolved = doc.document_id
                break

    if resolved is None and len(documents) == 1:
        resolved = documents[0].document_id

    if resolved is None:
        siblings = repository.find_by_provider_envelope(envelope.provider_envelope_id)
        position = next(
            (i for i, s in enumerate(siblings) if s.document_id == envelope.document_id),
            None,
        )
        if position is not None and position < len(documents):
            resolved = documents[position].document_id

    if resolved is None:
        logger.warning(
            f"Could not resolve provider document id for {envelope.document_id} "
            f"among {len(documents)} provider document(s)"
        )
        return None

    if repository.set_provider_document_id(envelope.document_id, resolved):
        logger.info(f"Provider document id resolved for {envelope.document_id}: {resolved}")
    envelope.provider_document_id = resolved
    return resolved


class EnvelopeReconciler:
    """Applies provider envelope state to local records."""

    def __init__(
        self,
        repository: EnvelopeRepository,
        provider: BryClient,
        blob_store: BlobStore,
        notifier: CompletionNotifier,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.provider = provider
        self.blob_store = blob_store
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def reconcile(self, document_id: str, token: Optional[str] = None) -> ReconcileResult:
        """
        Fetch provider state for one document's envelope and apply it.

        Raises:
            NotFoundError: no such document
            ProviderError: provider unreachable or non-success; nothing was written
            PartialFailure: signers updated, artifact fetch/store failed
        """
        envelope = self.repository.get_envelope(document_id)
        if envelope is None:
            raise NotFoundError("Document", document_id)

        set_context(document_id=document_id, envelope_id=envelope.provider_envelope_id)
        signers = self.repository.get_signers(document_id)
        result = ReconcileResult(
            document_id=document_id,
            signed_count=envelope.signed_count,
            total_signers=envelope.total_signers or len(signers),
            completed=envelope.is_signed,
        )

        if not envelope.provider_envelope_id:
            logger.info(f"Document {document_id} has no provider envelope, nothing to reconcile")
            result.success = False
            result.error = "No provider envelope"
            return result

        token = token or await self.provider.authenticate()
        state = await self.provider.get_envelope_state(envelope.provider_envelope_id, token=token)
        logger.info(
            f"Provider state for {envelope.provider_envelope_id}: status={state.status}, "
            f"{len(state.completed_signers)}/{len(state.signers)} signer(s) completed, "
            f"{len(state.documents)} document(s)"
        )

        provider_document_id = self._resolve_document_id(envelope, state)

        for provider_signer in state.completed_signers:
            local = match_local_signer(provider_signer, signers)
            if local is None:
                logger.warning(
                    f"No local signer for provider signer {mask_email(provider_signer.email)} "
                    f"(nonce {fingerprint(provider_signer.nonce, 'nonce_')})"
                )
                continue
            if local.is_signed:
                continue

            signed_at = provider_signer.signed_at or utc_now()
            if self.repository.mark_signer_signed(local.signer_id, signed_at):
                result.changed = True
                logger.info(f"Signer {local.signer_id} marked signed at {signed_at.isoformat()}")
            else:
                logger.info(f"Signer {local.signer_id} already marked signed by another invocation")

        signed_count = self.repository.count_signed(document_id)
        result.signed_count = signed_count
        if signed_count > envelope.signed_count:
            if self.repository.update_signed_count(document_id, signed_count):
                result.changed = True
        elif signed_count < envelope.signed_count:
            logger.warning(
                f"Cached signed count {envelope.signed_count} is above the signer rows ({signed_count}) "
                f"for {document_id}, correcting"
            )
            if self.repository.correct_signed_count(document_id, envelope.signed_count, signed_count):
                result.changed = True

        if state.is_completed and not envelope.is_signed:
            if signed_count < result.total_signers:
                logger.error(
                    f"SIGNER_COUNT_MISMATCH: provider reports envelope {envelope.provider_envelope_id} "
                    f"complete but only {signed_count}/{result.total_signers} local signers are signed"
                )
            else:
                await self._finalize(envelope, provider_document_id, signed_count, token, result)

        return result

    def _resolve_document_id(
        self,
        envelope: EnvelopeRecord,
        state: ProviderEnvelopeState,
    ) -> Optional[str]:
        return resolve_provider_document_id(self.repository, envelope, state)

    async def _finalize(
        self,
        envelope: EnvelopeRecord,
        provider_document_id: Optional[str],
        signed_count: int,
        token: str,
        result: ReconcileResult,
    ) -> None:
        """Store the signed artifact, then flip the document to signed."""
        try:
            if not provider_document_id:
                raise ValueError("provider document id is unknown")
            data = await self.provider.download_signed_document(
                envelope.provider_envelope_id, provider_document_id, token=token
            )
            if not data:
                raise ValueError("provider returned an empty signed document")
            artifact_ref = self.blob_store.upload_bytes(signed_artifact_path(envelope), data)
        except Exception as e:
            self._record_artifact_failure(envelope, e)
            result.success = False
            result.artifact_pending = True
            result.error = f"Signed artifact not stored: {e}"
            raise PartialFailure(result, result.error) from e

        won = self.repository.mark_envelope_signed(envelope.document_id, artifact_ref, signed_count)
        result.completed = True
        if not won:
            logger.info(f"Document {envelope.document_id} was marked signed by another invocation")
            return

        result.changed = True
        logger.info(f"Document {envelope.document_id} signed, artifact at {artifact_ref}")
        signers = self.repository.get_signers(envelope.document_id)
        await self.notifier.notify_completed(envelope, signers)

    def _record_artifact_failure(self, envelope: EnvelopeRecord, error: Exception) -> None:
        attempts = self.repository.record_artifact_failure(
            envelope.document_id, envelope.artifact_fetch_attempts, str(error)
        )
        max_attempts = self.settings.bry_artifact_max_attempts
        if attempts >= max_attempts:
            logger.error(
                f"ARTIFACT_DEAD_LETTER: signed artifact for {envelope.document_id} "
                f"(envelope {envelope.provider_envelope_id}) failed {attempts} times; "
                f"scheduled sweep will stop retrying. Last error: {error}"
            )
        else:
            logger.warning(
                f"Signed artifact fetch failed for {envelope.document_id} "
                f"(attempt {attempts}/{max_attempts}): {error}"
            )


def get_reconciler() -> EnvelopeReconciler:
    """Reconciler wired to the production singletons."""
    return EnvelopeReconciler(
        repository=get_envelope_repository(),
        provider=get_bry_client(),
        blob_store=get_blob_store(),
        notifier=get_completion_notifier(),
    )
