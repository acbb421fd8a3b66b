from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from modules.signing.models.signer import SignerStatus
from modules.signing.models.signing_request import SigningMode, SigningRequestStatus


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Everything is stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- requests ---

class SignerInput(CamelModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    user_id: Optional[int] = None
    signature_order: Optional[int] = Field(default=None, ge=1)


class CreateSigningRequest(CamelModel):
    document_version_id: int
    signing_mode: SigningMode = SigningMode.PARALLEL
    signers: List[SignerInput] = Field(min_length=1)
    due_date: Optional[datetime] = None
    message: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("due_date")
    @classmethod
    def due_date_as_utc(cls, value):
        return _naive_utc(value)


class SendForSigningRequest(CamelModel):
    token_expiration_days: int = Field(default=7, ge=1, le=90)


class DocumentSendForSigningRequest(CamelModel):
    signer_ids: List[int] = Field(min_length=1)
    signing_mode: SigningMode = SigningMode.PARALLEL
    due_date: Optional[datetime] = None
    message: Optional[str] = Field(default=None, max_length=1024)
    token_expiration_days: int = Field(default=7, ge=1, le=90)

    @field_validator("due_date")
    @classmethod
    def due_date_as_utc(cls, value):
        return _naive_utc(value)


class SignDocumentRequest(CamelModel):
    # base64, optionally as a data: URL from the signature pad
    signature_data: str = Field(min_length=1)
    signing_token: str = Field(min_length=1)
    device_info: Optional[str] = Field(default=None, max_length=512)
    location: Optional[str] = Field(default=None, max_length=128)


class DeclineRequest(CamelModel):
    signing_token: str = Field(min_length=1)
    reason: Optional[str] = Field(default=None, max_length=1024)


class CancelSigningRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=1024)


class RemindSignersRequest(CamelModel):
    signer_ids: Optional[List[int]] = None


# --- responses ---

class SigningRequestCreatedResponse(CamelModel):
    signing_request_id: int
    document_id: int
    status: SigningRequestStatus


class SendForSigningResponse(CamelModel):
    document_id: int
    signing_request_id: int
    status: SigningRequestStatus
    total_signers: int
    message: str
    signing_tokens: Dict[int, str]


class VerifyTokenResponse(CamelModel):
    is_valid: bool
    document_name: Optional[str] = None
    signer_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_current_signer: bool = False
    message: Optional[str] = None


class SignDocumentResponse(CamelModel):
    document_id: int
    signature_id: int
    signer_name: str
    signed_at: datetime
    status: SigningRequestStatus
    is_complete: bool
    signed_count: int
    total_signers: int
    progress_percentage: int
    next_signer_id: Optional[int] = None
    next_signer_ids: List[int] = []
    message: str


class SignatureDetailResponse(CamelModel):
    signer_id: int
    signer_name: str
    signer_email: str
    status: SignerStatus
    signature_order: int
    signed_at: Optional[datetime] = None
    device_info: Optional[str] = None
    is_current_signer: bool
    is_pending: bool


class SignatureStatusResponse(CamelModel):
    document_id: int
    signing_request_id: int
    document_version_id: int
    status: SigningRequestStatus
    signing_mode: SigningMode
    total_signers: int
    signed_count: int
    progress_percentage: int
    is_complete: bool
    due_date: Optional[datetime] = None
    signatures: List[SignatureDetailResponse]


class SigningRequestResponse(CamelModel):
    id: int
    document_id: int
    document_version_id: int
    # ORM rows call it `mode`
    signing_mode: SigningMode = Field(validation_alias=AliasChoices("mode", "signingMode", "signing_mode"))
    status: SigningRequestStatus
    due_date: Optional[datetime] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class AuditEntryResponse(CamelModel):
    action: str
    actor: Optional[str] = None
    details: str
    timestamp: datetime


class PendingSignatureResponse(CamelModel):
    signing_request_id: int
    document_id: int
    document_name: str
    signer_id: int
    signing_mode: SigningMode
    signature_order: int
    due_date: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    signed_count: int
    total_signers: int


class RemindSignersResponse(CamelModel):
    reminded_signer_ids: List[int]
