from datetime import datetime
from enum import Enum
from typing import Optional, List, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# Enums
class EnvelopeStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"


class SignatureMode(str, Enum):
    SIMPLE = "SIMPLE"
    ADVANCED = "ADVANCED"
    QUALIFIED = "QUALIFIED"


class AuthenticationOption(str, Enum):
    GEOLOCATION = "GEOLOCATION"
    IP = "IP"
    OTP_EMAIL = "OTP_EMAIL"
    OTP_PHONE = "OTP_PHONE"
    OTP_WHATSAPP = "OTP_WHATSAPP"
    SELFIE = "SELFIE"


DEFAULT_AUTH_OPTIONS = [
    AuthenticationOption.GEOLOCATION,
    AuthenticationOption.IP,
    AuthenticationOption.OTP_EMAIL,
]


# Persisted records (rows of `documents` / `document_signers`)
class EnvelopeRecord(BaseModel):
    """
    One signable document and its provider envelope.

    Field names are the domain names; aliases are the database columns.
    Several documents may share one provider envelope (multi-document
    envelope), each keeping its own provider document id.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    document_id: str = Field(..., alias="id")
    name: str = ""
    user_id: Optional[str] = None
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    signed_count: int = Field(default=0, alias="signed_by")
    total_signers: int = Field(default=0, alias="signers")
    provider_envelope_id: Optional[str] = Field(default=None, alias="bry_envelope_uuid")
    provider_document_id: Optional[str] = Field(default=None, alias="bry_document_uuid")
    signed_artifact_ref: Optional[str] = Field(default=None, alias="bry_signed_file_url")
    original_file_ref: Optional[str] = Field(default=None, alias="file_url")
    stamped_file_ref: Optional[str] = Field(default=None, alias="stamped_file_url")
    signature_mode: SignatureMode = SignatureMode.SIMPLE
    envelope_group_id: Optional[str] = Field(default=None, alias="envelope_id")
    artifact_fetch_attempts: int = 0
    artifact_last_error: Optional[str] = None
    completion_notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v: Any) -> Any:
        # Rows may carry legacy statuses (draft, in_progress); only "signed" is terminal
        if isinstance(v, EnvelopeStatus):
            return v
        return EnvelopeStatus.SIGNED if v == "signed" else EnvelopeStatus.PENDING

    @field_validator("signature_mode", mode="before")
    @classmethod
    def _coerce_mode(cls, v: Any) -> Any:
        if v is None:
            return SignatureMode.SIMPLE
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("signed_count", "total_signers", "artifact_fetch_attempts", mode="before")
    @classmethod
    def _none_to_zero(cls, v: Any) -> Any:
        return 0 if v is None else v

    @property
    def is_signed(self) -> bool:
        return self.status == EnvelopeStatus.SIGNED

    @property
    def uses_provider(self) -> bool:
        return bool(self.provider_envelope_id)


class SignerRecord(BaseModel):
    """One required signatory on a document."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    signer_id: str = Field(..., alias="id")
    document_id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    cpf: Optional[str] = None
    status: SignerStatus = SignerStatus.PENDING
    signed_at: Optional[datetime] = None
    provider_nonce: Optional[str] = Field(default=None, alias="bry_signer_nonce")
    provider_link: Optional[str] = Field(default=None, alias="bry_signer_link")
    signature_ip: Optional[str] = None
    signature_city: Optional[str] = None
    signature_state: Optional[str] = None
    signature_country: Optional[str] = None
    signature_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, v: Any) -> Any:
        if isinstance(v, SignerStatus):
            return v
        return SignerStatus.SIGNED if v == "signed" else SignerStatus.PENDING

    @property
    def is_signed(self) -> bool:
        return self.status == SignerStatus.SIGNED


class SignatureEvidence(BaseModel):
    """Where and how a signer signed, stored on the signer row."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    signature_ip: Optional[str] = Field(default=None, alias="ip")
    signature_city: Optional[str] = Field(default=None, alias="city")
    signature_state: Optional[str] = Field(default=None, alias="state")
    signature_country: Optional[str] = Field(default=None, alias="country")
    signature_id: Optional[str] = Field(default=None, alias="signatureId")

    def to_columns(self) -> dict:
        return {k: v for k, v in self.model_dump().items() if v is not None}


# Request Models
class WebhookPayload(BaseRequest):
    """Provider push notification. Only `uuid` is needed; the rest is logged."""
    event: Optional[str] = None
    uuid: Optional[str] = None
    status: Optional[str] = None
    signer_nonce: Optional[str] = Field(default=None, alias="signerNonce")
    signer_email: Optional[str] = Field(default=None, alias="signerEmail")
    document_uuid: Optional[str] = Field(default=None, alias="documentUuid")
    signer: Optional[dict] = None

    @model_validator(mode="after")
    def _lift_nested_signer(self) -> "WebhookPayload":
        # Some event variants nest signer data: {"signer": {"signerNonce": ..., "email": ...}}
        if self.signer:
            if not self.signer_nonce:
                self.signer_nonce = self.signer.get("signerNonce") or self.signer.get("nonce")
            if not self.signer_email:
                self.signer_email = self.signer.get("email")
        return self


class SyncRequest(BaseRequest):
    document_id: Optional[str] = Field(default=None, alias="documentId")
    document_ids: Optional[List[str]] = Field(default=None, alias="documentIds")

    @model_validator(mode="after")
    def _require_target(self) -> "SyncRequest":
        if not self.document_id and not self.document_ids:
            raise ValueError("documentId or documentIds is required")
        return self


class EvidenceRequest(BaseRequest):
    document_id: str = Field(..., min_length=1, alias="documentId")


class CreateEnvelopeRequest(BaseRequest):
    document_id: str = Field(..., min_length=1, alias="documentId")
    signature_mode: SignatureMode = Field(default=SignatureMode.ADVANCED, alias="signatureMode")
    authentication_options: Optional[List[AuthenticationOption]] = Field(
        default=None, alias="authenticationOptions"
    )

    @field_validator("signature_mode", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("signature_mode")
    @classmethod
    def _provider_mode_only(cls, v: SignatureMode) -> SignatureMode:
        if v == SignatureMode.SIMPLE:
            raise ValueError("SIMPLE signatures are stamped locally, not sent to the provider")
        return v


class SimpleSignatureRequest(BaseRequest):
    signer_id: str = Field(..., min_length=1, alias="signerId")
    evidence: SignatureEvidence = Field(default_factory=SignatureEvidence)


class WebhookRegistrationRequest(BaseRequest):
    url: Optional[str] = None


# Response Models
class SyncSingleResponse(BaseModel):
    success: bool
    signedCount: int
    totalSigners: int
    completed: bool
    changed: bool
    artifactPending: bool = False
    error: Optional[str] = None


class SyncBatchResponse(BaseModel):
    success: bool
    results: List[dict]
    totalChanged: int


class WebhookResponse(BaseModel):
    success: bool = True
    documents: int = 0
    changed: bool = False
    artifactPending: bool = False


class SweepResponse(BaseModel):
    success: bool = True
    processed: int
    changed: int
    failed: int
    skipped: int = 0


class SignerLinkResponse(BaseModel):
    email: Optional[str] = None
    link: Optional[str] = None


class CreateEnvelopeResponse(BaseModel):
    envelopeId: str
    documentId: str
    providerDocumentId: Optional[str] = None
    signers: List[SignerLinkResponse]


class SimpleSignatureResponse(BaseModel):
    success: bool = True
    changed: bool
    signedFilePath: Optional[str] = None
    signedCount: int
    totalSigners: int
    completed: bool


class ErrorResponse(BaseModel):
    error: bool = True
    code: str
    message: str
    request_id: Optional[str] = None
    details: Optional[dict] = None
