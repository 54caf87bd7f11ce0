from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.document import DocumentStatus, FieldType, SigningMode
from app.models.signer import SignerAuthMethod, SignerStatus
from app.schemas.common import IDModel


class FieldValue(BaseModel):
    field_id: UUID
    value: str = ""

    @field_validator("value")
    @classmethod
    def strip_value(cls, value: str) -> str:
        return (value or "").strip()


class AcceptSignaturePayload(BaseModel):
    consent: bool
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = None
    field_values: list[FieldValue] = Field(default_factory=list)
    signature_data: str | None = None
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)


class SignatureFieldRead(IDModel):
    signer_id: UUID
    type: FieldType
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool
    value: str | None = None


class SignerRead(IDModel):
    """Signer view without the access token or verification secrets."""

    document_id: UUID
    name: str
    email: str
    status: SignerStatus
    order: int | None = None
    auth_method: SignerAuthMethod
    notified_at: datetime | None = None
    viewed_at: datetime | None = None
    signed_at: datetime | None = None


class SigningContext(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id: UUID
    document_title: str
    document_status: DocumentStatus
    signing_mode: SigningMode
    signing_language: str
    expires_at: datetime | None = None
    signer: SignerRead
    fields: list[SignatureFieldRead]
    requires_verification: bool
    is_turn: bool
