"""
Supabase persistence for envelopes (`documents`) and signers (`document_signers`).

Uses the service-role key: reconciliation runs from webhooks and
Cloud Scheduler with no user session.

Every mutating method puts its precondition in the filter chain
("update ... where id = X and status != 'signed'") and reports whether a
row was affected. Concurrent reconcilers racing on the same row therefore
see exactly one winner; the losers get False and skip the side effects.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from supabase import create_client, Client

from app.config import get_settings, Settings
from app.models import EnvelopeRecord, SignerRecord, EnvelopeStatus, SignerStatus
from app.utils.datetime_utils import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

DOCUMENTS_TABLE = "documents"
SIGNERS_TABLE = "document_signers"


class EnvelopeRepository:
    """Supabase table access for envelope and signer records."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_client(
                self.settings.supabase_url,
                self.settings.supabase_service_role_key,
            )
        return self._client

    def table(self, table_name: str):
        return self.client.table(table_name)

    # Reads
    def get_envelope(self, document_id: str) -> Optional[EnvelopeRecord]:
        result = self.table(DOCUMENTS_TABLE).select("*").eq("id", document_id).limit(1).execute()
        if not result.data:
            return None
        return EnvelopeRecord.model_validate(result.data[0])

    def get_signers(self, document_id: str) -> List[SignerRecord]:
        """Signers of a document in creation order (the order stamps are laid out in)."""
        result = self.table(SIGNERS_TABLE).select("*").eq(
            "document_id", document_id
        ).order("created_at").execute()
        return [SignerRecord.model_validate(row) for row in (result.data or [])]

    def find_by_provider_envelope(self, provider_envelope_id: str) -> List[EnvelopeRecord]:
        """All local documents bundled in one provider envelope, in envelope order."""
        result = self.table(DOCUMENTS_TABLE).select("*").eq(
            "bry_envelope_uuid", provider_envelope_id
        ).order("created_at").execute()
        return [EnvelopeRecord.model_validate(row) for row in (result.data or [])]

    def find_by_signer_nonce(self, nonce: str) -> List[EnvelopeRecord]:
        result = self.table(SIGNERS_TABLE).select("document_id").eq(
            "bry_signer_nonce", nonce
        ).execute()
        document_ids = sorted({row["document_id"] for row in (result.data or [])})
        envelopes = [self.get_envelope(doc_id) for doc_id in document_ids]
        return [e for e in envelopes if e is not None]

    def list_group(self, envelope_group_id: str) -> List[EnvelopeRecord]:
        """Documents grouped locally under one envelope_id, in creation order."""
        result = self.table(DOCUMENTS_TABLE).select("*").eq(
            "envelope_id", envelope_group_id
        ).order("created_at").execute()
        return [EnvelopeRecord.model_validate(row) for row in (result.data or [])]

    def select_sweep_candidates(self, limit: int, max_attempts: int) -> List[EnvelopeRecord]:
        """
        Pending provider envelopes, most recent first.

        This selection is the whole retry policy for lost webhooks and failed
        artifact fetches: anything not yet signed is picked up again next run,
        until it exhausts its artifact attempts.
        """
        result = self.table(DOCUMENTS_TABLE).select("*").not_.is_(
            "bry_envelope_uuid", "null"
        ).neq(
            "status", EnvelopeStatus.SIGNED.value
        ).or_(
            f"artifact_fetch_attempts.lt.{max_attempts},artifact_fetch_attempts.is.null"
        ).order("created_at", desc=True).limit(limit).execute()
        return [EnvelopeRecord.model_validate(row) for row in (result.data or [])]

    def count_signed(self, document_id: str) -> int:
        """True signed count, read from the signer collection."""
        result = self.table(SIGNERS_TABLE).select("id", count="exact").eq(
            "document_id", document_id
        ).eq(
            "status", SignerStatus.SIGNED.value
        ).execute()
        if result.count is not None:
            return result.count
        return len(result.data or [])

    # Conditional writes
    def set_provider_envelope_id(self, document_id: str, provider_envelope_id: str) -> bool:
        """Provider envelope id is immutable once set."""
        result = self.table(DOCUMENTS_TABLE).update(
            {"bry_envelope_uuid": provider_envelope_id}
        ).eq("id", document_id).is_("bry_envelope_uuid", "null").execute()
        return bool(result.data)

    def release_provider_envelope_id(self, document_id: str, provider_envelope_id: str) -> bool:
        """Unbind a document from an envelope, only while it still points at that envelope."""
        result = self.table(DOCUMENTS_TABLE).update(
            {"bry_envelope_uuid": None, "bry_document_uuid": None}
        ).eq("id", document_id).eq("bry_envelope_uuid", provider_envelope_id).execute()
        return bool(result.data)

    def set_provider_document_id(self, document_id: str, provider_document_id: str) -> bool:
        result = self.table(DOCUMENTS_TABLE).update(
            {"bry_document_uuid": provider_document_id}
        ).eq("id", document_id).is_("bry_document_uuid", "null").execute()
        return bool(result.data)

    def save_signer_link(self, signer_id: str, nonce: Optional[str], link: Optional[str]) -> bool:
        updates: Dict[str, Any] = {}
        if nonce:
            updates["bry_signer_nonce"] = nonce
        if link:
            updates["bry_signer_link"] = link
        if not updates:
            return False
        result = self.table(SIGNERS_TABLE).update(updates).eq("id", signer_id).execute()
        return bool(result.data)

    def mark_signer_signed(
        self,
        signer_id: str,
        signed_at: datetime,
        evidence: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        pending -> signed, at most once per signer.

        Returns True only for the caller whose write flipped the row;
        signed_at is never overwritten afterwards.
        """
        updates: Dict[str, Any] = dict(evidence or {})
        updates["status"] = SignerStatus.SIGNED.value
        updates["signed_at"] = to_db_timestamp(signed_at)

        result = self.table(SIGNERS_TABLE).update(updates).eq(
            "id", signer_id
        ).neq("status", SignerStatus.SIGNED.value).execute()
        return bool(result.data)

    def update_signed_count(self, document_id: str, signed_count: int) -> bool:
        """Raise the cached counter; a stale reader can never lower it."""
        result = self.table(DOCUMENTS_TABLE).update(
            {"signed_by": signed_count}
        ).eq("id", document_id).or_(f"signed_by.lt.{signed_count},signed_by.is.null").execute()
        return bool(result.data)

    def correct_signed_count(self, document_id: str, expected: int, signed_count: int) -> bool:
        """Lower a drifted counter, only if nobody changed it since it was read."""
        result = self.table(DOCUMENTS_TABLE).update(
            {"signed_by": signed_count}
        ).eq("id", document_id).eq("signed_by", expected).execute()
        return bool(result.data)

    def mark_envelope_signed(
        self,
        document_id: str,
        artifact_ref: str,
        signed_count: int,
    ) -> bool:
        """
        pending -> signed together with the artifact reference, at most once.

        Status and artifact land in the same row update, so a signed row
        always has its artifact.
        """
        if not artifact_ref:
            raise ValueError("Refusing to mark an envelope signed without an artifact")

        result = self.table(DOCUMENTS_TABLE).update({
            "status": EnvelopeStatus.SIGNED.value,
            "bry_signed_file_url": artifact_ref,
            "signed_by": signed_count,
            "artifact_last_error": None,
            "completion_notified_at": to_db_timestamp(utc_now()),
        }).eq("id", document_id).neq("status", EnvelopeStatus.SIGNED.value).execute()
        return bool(result.data)

    def record_artifact_failure(self, document_id: str, previous_attempts: int, error: str) -> int:
        """
        Count a failed artifact fetch. Returns the attempt count now stored.

        Compare-and-set on the previous value; when another invocation
        counted the same failure first, its value is kept.
        """
        attempts = previous_attempts + 1
        query = self.table(DOCUMENTS_TABLE).update({
            "artifact_fetch_attempts": attempts,
            "artifact_last_error": error[:500],
        }).eq("id", document_id)
        if previous_attempts == 0:
            query = query.or_("artifact_fetch_attempts.eq.0,artifact_fetch_attempts.is.null")
        else:
            query = query.eq("artifact_fetch_attempts", previous_attempts)
        result = query.execute()
        if not result.data:
            logger.info(f"Artifact failure for {document_id} already recorded by another invocation")
        return attempts

    def swap_stamped_file(
        self,
        document_id: str,
        expected_ref: Optional[str],
        new_ref: str,
    ) -> bool:
        """Point stamped_file_url at a new file if it still holds the one we stamped on."""
        query = self.table(DOCUMENTS_TABLE).update({"stamped_file_url": new_ref}).eq("id", document_id)
        if expected_ref is None:
            query = query.is_("stamped_file_url", "null")
        else:
            query = query.eq("stamped_file_url", expected_ref)
        result = query.execute()
        return bool(result.data)


# Singleton instance
_repository: Optional[EnvelopeRepository] = None


def get_envelope_repository() -> EnvelopeRepository:
    """Get the envelope repository singleton."""
    global _repository
    if _repository is None:
        _repository = EnvelopeRepository()
    return _repository
