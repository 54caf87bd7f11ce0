from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"


class SignerAuthMethod(str, Enum):
    NONE = "none"
    EMAIL = "email"


class Signer(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signers"

    document_id: UUID = Field(foreign_key="documents.id", index=True)
    tenant_id: UUID = Field(index=True)
    name: str = Field(max_length=255)
    email: str = Field(max_length=255)
    status: SignerStatus = Field(default=SignerStatus.PENDING)
    access_token: str = Field(unique=True, index=True, max_length=128)
    order: int | None = Field(default=None)
    auth_method: SignerAuthMethod = Field(default=SignerAuthMethod.NONE)

    # Email verification (one-time code)
    verification_code_hash: str | None = Field(default=None, max_length=64)
    verification_expires_at: datetime | None = Field(default=None)
    verification_attempts: int = Field(default=0)
    verified_at: datetime | None = Field(default=None)

    # Delivery tracking
    notified_at: datetime | None = Field(default=None)
    viewed_at: datetime | None = Field(default=None)
    reminder_count: int = Field(default=0)

    # Evidence, null until signed
    signed_at: datetime | None = Field(default=None)
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None)
    latitude: float | None = Field(default=None)
    longitude: float | None = Field(default=None)
    signature_data: str | None = Field(default=None)

    @property
    def is_signed(self) -> bool:
        return self.status == SignerStatus.SIGNED
