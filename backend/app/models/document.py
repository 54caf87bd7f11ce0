from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SIGNATURES = "pending_signatures"
    COMPLETED = "completed"
    EXPIRED = "expired"


class SigningMode(str, Enum):
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class ReminderInterval(str, Enum):
    ONE_DAY = "1_day"
    TWO_DAYS = "2_days"
    THREE_DAYS = "3_days"
    SEVEN_DAYS = "7_days"

    @property
    def days(self) -> int:
        return int(self.value.split("_", 1)[0])


class FieldType(str, Enum):
    SIGNATURE = "signature"
    NAME = "name"
    DATE = "date"
    INITIALS = "initials"
    TEXT = "text"


class Document(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "documents"

    tenant_id: UUID = Field(index=True)
    envelope_id: UUID | None = Field(default=None, index=True)
    title: str = Field(max_length=255)
    original_file_key: str | None = Field(default=None)
    original_hash: str | None = Field(default=None, max_length=64)
    final_file_key: str | None = Field(default=None)
    final_hash: str | None = Field(default=None, max_length=64)
    status: DocumentStatus = Field(default=DocumentStatus.DRAFT, index=True)
    signing_mode: SigningMode = Field(default=SigningMode.PARALLEL)
    signing_language: str = Field(default="en", max_length=16)
    reminder_interval: ReminderInterval | None = Field(default=None)
    expires_at: datetime | None = Field(default=None)
    version: int = Field(default=1)
    sent_at: datetime | None = Field(default=None)
    completed_at: datetime | None = Field(default=None)

    # At-most-once finalization gate
    finalization_claim: str | None = Field(default=None, max_length=64)
    finalization_claimed_at: datetime | None = Field(default=None)


class SignatureField(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signature_fields"

    document_id: UUID = Field(foreign_key="documents.id", index=True)
    signer_id: UUID = Field(foreign_key="signers.id", index=True)
    type: FieldType = Field(default=FieldType.SIGNATURE)
    page: int = Field(default=1, ge=1)
    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)
    width: float = Field(gt=0.0, le=1.0)
    height: float = Field(gt=0.0, le=1.0)
    required: bool = Field(default=True)
    value: str | None = Field(default=None)
