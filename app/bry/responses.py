"""
Typed views over BRy Easy Signature responses.

BRy returns the same concept under different keys depending on endpoint
and API revision (`signers` vs `subscribers`, `status` vs
`signatureStatus`, ...). Every variant is resolved here, in one fixed
priority order, so callers only ever see the dataclasses below.

Key priority:
    signers list     signers > subscribers > signatories
    signer nonce     signerNonce > nonce
    signer status    status > signatureStatus
    signed at        signedAt > completedAt (ISO string or epoch ms/s)
    document id      documentUuid > uuid > nonce
    document name    name > documentName > fileName
    envelope status  status > signatureStatus
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.utils.datetime_utils import parse_db_timestamp

SIGNER_COMPLETE_STATUSES = frozenset({"COMPLETED", "SIGNED"})
ENVELOPE_COMPLETE_STATUSES = frozenset({"COMPLETED", "SIGNED", "FINISHED"})

SIGNERS_KEYS = ("signers", "subscribers", "signatories")
SIGNER_NONCE_KEYS = ("signerNonce", "nonce")
SIGNER_STATUS_KEYS = ("status", "signatureStatus")
SIGNED_AT_KEYS = ("signedAt", "completedAt")
DOCUMENT_ID_KEYS = ("documentUuid", "uuid", "nonce")
DOCUMENT_NAME_KEYS = ("name", "documentName", "fileName")
ENVELOPE_STATUS_KEYS = ("status", "signatureStatus")

# Numeric timestamps at or above this are epoch milliseconds
EPOCH_MILLIS_THRESHOLD = 10 ** 11


def first_present(data: Dict[str, Any], keys: tuple) -> Any:
    """Value of the first key that is present and non-empty."""
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return None


def _normalize_status(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip().upper() or None


@dataclass
class ProviderSigner:
    nonce: Optional[str]
    email: Optional[str]
    name: Optional[str]
    status: Optional[str]
    signed_at: Optional[datetime]
    alt_status: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return (
            self.status in SIGNER_COMPLETE_STATUSES
            or self.alt_status in SIGNER_COMPLETE_STATUSES
        )

    @property
    def email_key(self) -> Optional[str]:
        return self.email.strip().lower() if self.email else None


@dataclass
class ProviderDocument:
    document_id: Optional[str]
    name: Optional[str]


@dataclass
class ProviderEnvelopeState:
    envelope_id: Optional[str]
    status: Optional[str]
    signers: List[ProviderSigner] = field(default_factory=list)
    documents: List[ProviderDocument] = field(default_factory=list)

    @property
    def is_completed(self) -> bool:
        return self.status in ENVELOPE_COMPLETE_STATUSES

    @property
    def completed_signers(self) -> List[ProviderSigner]:
        return [s for s in self.signers if s.is_completed]


@dataclass
class SignerLink:
    email: Optional[str]
    nonce: Optional[str]
    link: Optional[str]


@dataclass
class CreatedEnvelope:
    envelope_id: str
    document_ids: List[str]
    signer_links: List[SignerLink]

    @property
    def first_document_id(self) -> Optional[str]:
        return self.document_ids[0] if self.document_ids else None


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """ISO string, or epoch milliseconds/seconds as a number or digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_db_timestamp(value)


def parse_signer(data: Dict[str, Any]) -> ProviderSigner:
    status = _normalize_status(data.get("status"))
    alt_status = _normalize_status(data.get("signatureStatus"))
    return ProviderSigner(
        nonce=first_present(data, SIGNER_NONCE_KEYS),
        email=data.get("email"),
        name=data.get("name"),
        status=status or alt_status,
        alt_status=alt_status,
        signed_at=parse_provider_timestamp(first_present(data, SIGNED_AT_KEYS)),
    )


def parse_document(data: Dict[str, Any]) -> ProviderDocument:
    return ProviderDocument(
        document_id=first_present(data, DOCUMENT_ID_KEYS),
        name=first_present(data, DOCUMENT_NAME_KEYS),
    )


def parse_envelope_state(data: Dict[str, Any]) -> ProviderEnvelopeState:
    """Build a ProviderEnvelopeState from a GET /signatures/{uuid} (or /status) body."""
    data = data or {}
    signers_raw = first_present(data, SIGNERS_KEYS) or []
    documents_raw = data.get("documents") or []
    return ProviderEnvelopeState(
        envelope_id=data.get("uuid"),
        status=_normalize_status(first_present(data, ENVELOPE_STATUS_KEYS)),
        signers=[parse_signer(s) for s in signers_raw if isinstance(s, dict)],
        documents=[parse_document(d) for d in documents_raw if isinstance(d, dict)],
    )


def nonce_from_link(href: Optional[str]) -> Optional[str]:
    """
    Signer nonce embedded in a signing link.

    https://easysign.hom.bry.com.br/pt-br/{envelope}/sign/{nonce} -> {nonce};
    without a /sign/ segment the last path segment is used.
    """
    if not href:
        return None
    parts = [p for p in href.split("?")[0].split("/") if p]
    if "sign" in parts:
        idx = parts.index("sign")
        if idx + 1 < len(parts):
            return parts[idx + 1]
    return parts[-1] if parts else None


def parse_created_envelope(data: Dict[str, Any], api_base_url: str) -> CreatedEnvelope:
    """Build a CreatedEnvelope from the POST /signatures response."""
    envelope_id = data.get("uuid")
    if not envelope_id:
        raise ValueError("Provider response has no envelope uuid")

    document_ids = []
    for doc in data.get("documents") or []:
        doc_id = parse_document(doc).document_id
        if doc_id:
            document_ids.append(doc_id)

    links = []
    for signer in first_present(data, SIGNERS_KEYS) or []:
        link_data = signer.get("link")
        href = link_data.get("href") if isinstance(link_data, dict) else link_data
        nonce = first_present(signer, SIGNER_NONCE_KEYS) or nonce_from_link(href)
        if not href and nonce:
            href = f"{api_base_url}/sign/{nonce}"
        links.append(SignerLink(email=signer.get("email"), nonce=nonce, link=href))

    return CreatedEnvelope(envelope_id=envelope_id, document_ids=document_ids, signer_links=links)
