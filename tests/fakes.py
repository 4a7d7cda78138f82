"""
In-memory fakes for the repository, BRy client, blob store and notifier.

Rows are kept as the database keeps them (column names, ISO timestamps)
and writes apply the same preconditions as the Supabase filter chains, so
conditional-write races can be exercised without a database.
"""
import asyncio
from copy import deepcopy
from datetime import datetime
from typing import Dict, List, Optional

import fitz

from app.bry.client import ProviderError
from app.bry.responses import (
    CreatedEnvelope,
    ProviderDocument,
    ProviderEnvelopeState,
    ProviderSigner,
)
from app.models import EnvelopeRecord, SignerRecord
from app.storage import BlobNotFoundError, normalize_storage_path
from app.utils.datetime_utils import to_db_timestamp, utc_now


def make_pdf(pages: int = 1, label: str = "Documento") -> bytes:
    """A4 PDF with one line of text per page: '<label> pagina <n>'."""
    doc = fitz.open()
    for number in range(1, pages + 1):
        page = doc.new_page(width=595, height=842)
        page.insert_text((72, 72), f"{label} pagina {number}", fontsize=12)
    data = doc.tobytes()
    doc.close()
    return data


def page_texts(pdf_bytes: bytes) -> List[str]:
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        return [page.get_text() for page in doc]


class FakeRepository:
    """In-memory stand-in for EnvelopeRepository."""

    def __init__(self):
        self.documents: Dict[str, dict] = {}
        self.signers: Dict[str, dict] = {}
        self.signer_wins: List[str] = []
        self.envelope_wins: List[str] = []
        self._clock = 0

    def _next_created_at(self) -> str:
        self._clock += 1
        return f"2024-01-01T00:00:{self._clock:02d}+00:00"

    # Seeding
    def add_document(self, document_id: str, **columns) -> dict:
        row = {
            "id": document_id,
            "name": "Contrato.pdf",
            "user_id": "user-1",
            "status": "pending",
            "signed_by": 0,
            "signers": 0,
            "bry_envelope_uuid": None,
            "bry_document_uuid": None,
            "bry_signed_file_url": None,
            "file_url": f"user-1/{document_id}.pdf",
            "stamped_file_url": None,
            "signature_mode": "ADVANCED",
            "envelope_id": None,
            "artifact_fetch_attempts": 0,
            "artifact_last_error": None,
            "completion_notified_at": None,
            "created_at": self._next_created_at(),
        }
        row.update(columns)
        self.documents[document_id] = row
        return row

    def add_signer(self, signer_id: str, document_id: str, **columns) -> dict:
        row = {
            "id": signer_id,
            "document_id": document_id,
            "name": "Signatario",
            "email": f"{signer_id}@example.com",
            "phone": None,
            "cpf": None,
            "status": "pending",
            "signed_at": None,
            "bry_signer_nonce": None,
            "bry_signer_link": None,
            "created_at": self._next_created_at(),
        }
        row.update(columns)
        self.signers[signer_id] = row
        doc = self.documents[document_id]
        doc["signers"] = sum(1 for s in self.signers.values() if s["document_id"] == document_id)
        return row

    # Reads
    def get_envelope(self, document_id: str) -> Optional[EnvelopeRecord]:
        row = self.documents.get(document_id)
        return EnvelopeRecord.model_validate(deepcopy(row)) if row else None

    def get_signers(self, document_id: str) -> List[SignerRecord]:
        rows = [s for s in self.signers.values() if s["document_id"] == document_id]
        rows.sort(key=lambda r: r["created_at"])
        return [SignerRecord.model_validate(deepcopy(r)) for r in rows]

    def _documents_where(self, predicate) -> List[EnvelopeRecord]:
        rows = sorted((d for d in self.documents.values() if predicate(d)), key=lambda r: r["created_at"])
        return [EnvelopeRecord.model_validate(deepcopy(r)) for r in rows]

    def find_by_provider_envelope(self, provider_envelope_id: str) -> List[EnvelopeRecord]:
        return self._documents_where(lambda d: d["bry_envelope_uuid"] == provider_envelope_id)

    def find_by_signer_nonce(self, nonce: str) -> List[EnvelopeRecord]:
        doc_ids = {s["document_id"] for s in self.signers.values() if s["bry_signer_nonce"] == nonce}
        return self._documents_where(lambda d: d["id"] in doc_ids)

    def list_group(self, envelope_group_id: str) -> List[EnvelopeRecord]:
        return self._documents_where(lambda d: d["envelope_id"] == envelope_group_id)

    def select_sweep_candidates(self, limit: int, max_attempts: int) -> List[EnvelopeRecord]:
        rows = [
            d for d in self.documents.values()
            if d["bry_envelope_uuid"]
            and d["status"] != "signed"
            and (d["artifact_fetch_attempts"] or 0) < max_attempts
        ]
        rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [EnvelopeRecord.model_validate(deepcopy(r)) for r in rows[:limit]]

    def count_signed(self, document_id: str) -> int:
        return sum(
            1 for s in self.signers.values()
            if s["document_id"] == document_id and s["status"] == "signed"
        )

    # Conditional writes
    def set_provider_envelope_id(self, document_id: str, provider_envelope_id: str) -> bool:
        row = self.documents.get(document_id)
        if not row or row["bry_envelope_uuid"] is not None:
            return False
        row["bry_envelope_uuid"] = provider_envelope_id
        return True

    def release_provider_envelope_id(self, document_id: str, provider_envelope_id: str) -> bool:
        row = self.documents.get(document_id)
        if not row or row["bry_envelope_uuid"] != provider_envelope_id:
            return False
        row["bry_envelope_uuid"] = None
        row["bry_document_uuid"] = None
        return True

    def set_provider_document_id(self, document_id: str, provider_document_id: str) -> bool:
        row = self.documents.get(document_id)
        if not row or row["bry_document_uuid"] is not None:
            return False
        row["bry_document_uuid"] = provider_document_id
        return True

    def save_signer_link(self, signer_id: str, nonce: Optional[str], link: Optional[str]) -> bool:
        row = self.signers.get(signer_id)
        if not row or not (nonce or link):
            return False
        if nonce:
            row["bry_signer_nonce"] = nonce
        if link:
            row["bry_signer_link"] = link
        return True

    def mark_signer_signed(self, signer_id: str, signed_at: datetime, evidence: Optional[dict] = None) -> bool:
        row = self.signers.get(signer_id)
        if not row or row["status"] == "signed":
            return False
        row.update(evidence or {})
        row["status"] = "signed"
        row["signed_at"] = to_db_timestamp(signed_at)
        self.signer_wins.append(signer_id)
        return True

    def update_signed_count(self, document_id: str, signed_count: int) -> bool:
        row = self.documents.get(document_id)
        if not row or not (row["signed_by"] is None or row["signed_by"] < signed_count):
            return False
        row["signed_by"] = signed_count
        return True

    def correct_signed_count(self, document_id: str, expected: int, signed_count: int) -> bool:
        row = self.documents.get(document_id)
        if not row or row["signed_by"] != expected:
            return False
        row["signed_by"] = signed_count
        return True

    def mark_envelope_signed(self, document_id: str, artifact_ref: str, signed_count: int) -> bool:
        if not artifact_ref:
            raise ValueError("Refusing to mark an envelope signed without an artifact")
        row = self.documents.get(document_id)
        if not row or row["status"] == "signed":
            return False
        row.update({
            "status": "signed",
            "bry_signed_file_url": artifact_ref,
            "signed_by": signed_count,
            "artifact_last_error": None,
            "completion_notified_at": to_db_timestamp(utc_now()),
        })
        self.envelope_wins.append(document_id)
        return True

    def record_artifact_failure(self, document_id: str, previous_attempts: int, error: str) -> int:
        row = self.documents[document_id]
        if (row["artifact_fetch_attempts"] or 0) == previous_attempts:
            row["artifact_fetch_attempts"] = previous_attempts + 1
            row["artifact_last_error"] = error[:500]
        return previous_attempts + 1

    def swap_stamped_file(self, document_id: str, expected_ref: Optional[str], new_ref: str) -> bool:
        row = self.documents.get(document_id)
        if not row or row["stamped_file_url"] != expected_ref:
            return False
        row["stamped_file_url"] = new_ref
        return True


class FakeProvider:
    """In-memory BRy: envelope states, signed files and unified reports."""

    def __init__(self):
        self.states: Dict[str, ProviderEnvelopeState] = {}
        self.signed_files: Dict[tuple, bytes] = {}
        self.reports: Dict[tuple, bytes] = {}
        self.download_error: Optional[Exception] = None
        self.state_error: Optional[Exception] = None
        self.created: Optional[CreatedEnvelope] = None
        self.create_calls: List[dict] = []
        self.registered_webhooks: List[str] = []
        self.auth_calls = 0
        self.state_calls = 0
        self.download_calls = 0

    def set_state(
        self,
        envelope_id: str,
        status: str,
        signers: List[ProviderSigner],
        documents: Optional[List[ProviderDocument]] = None,
    ) -> None:
        self.states[envelope_id] = ProviderEnvelopeState(
            envelope_id=envelope_id,
            status=status,
            signers=signers,
            documents=documents if documents is not None else [ProviderDocument("bry-doc-1", "Contrato.pdf")],
        )

    async def authenticate(self) -> str:
        self.auth_calls += 1
        return "token-123"

    async def get_envelope_state(self, envelope_id: str, token: Optional[str] = None) -> ProviderEnvelopeState:
        self.state_calls += 1
        # Yield so concurrent reconciliations interleave after the read
        await asyncio.sleep(0)
        if self.state_error:
            raise self.state_error
        if envelope_id not in self.states:
            raise ProviderError("Envelope not found", 404, "{}")
        return deepcopy(self.states[envelope_id])

    async def download_signed_document(self, envelope_id: str, document_id: str, token: Optional[str] = None) -> bytes:
        self.download_calls += 1
        await asyncio.sleep(0)
        if self.download_error:
            raise self.download_error
        return self.signed_files.get((envelope_id, document_id), make_pdf(1, "Assinado"))

    async def download_unified_report(self, envelope_id: str, document_id: str, token: Optional[str] = None) -> bytes:
        if (envelope_id, document_id) not in self.reports:
            raise ProviderError("Report not found", 404, "{}")
        return self.reports[(envelope_id, document_id)]

    async def create_envelope(self, **kwargs) -> CreatedEnvelope:
        self.create_calls.append(kwargs)
        return self.created

    async def register_webhook(self, url: str, token: Optional[str] = None) -> dict:
        self.registered_webhooks.append(url)
        return {"status": "ok"}


class FakeBlobStore:
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.uploads: List[str] = []

    def download_bytes(self, ref: str) -> bytes:
        path = normalize_storage_path(ref)
        if path not in self.objects:
            raise BlobNotFoundError(f"File not found in GCS: {path}")
        return self.objects[path]

    def upload_bytes(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        path = normalize_storage_path(path)
        self.objects[path] = data
        self.uploads.append(path)
        return path

    def exists(self, ref: str) -> bool:
        return normalize_storage_path(ref) in self.objects


class RecordingNotifier:
    def __init__(self):
        self.calls: List[tuple] = []

    async def notify_completed(self, envelope: EnvelopeRecord, signers: List[SignerRecord]) -> None:
        self.calls.append((envelope.document_id, [s.signer_id for s in signers]))


def completed_signer(nonce: Optional[str], email: str, signed_at: Optional[datetime] = None) -> ProviderSigner:
    return ProviderSigner(
        nonce=nonce,
        email=email,
        name=None,
        status="COMPLETED",
        signed_at=signed_at,
    )


def pending_signer(nonce: Optional[str], email: str) -> ProviderSigner:
    return ProviderSigner(nonce=nonce, email=email, name=None, status="PENDING", signed_at=None)


