from datetime import datetime
from uuid import UUID

from app.models.document import SigningMode
from app.schemas.common import CamelModel


class DocumentEvent(CamelModel):
    document_id: UUID
    tenant_id: UUID


class SignerAddedEvent(DocumentEvent):
    signer_id: UUID
    email: str


class DocumentSentEvent(DocumentEvent):
    signing_mode: SigningMode
    sent_at: datetime


class SignatureCompletedEvent(DocumentEvent):
    signer_id: UUID
    signed_at: datetime


class DocumentCompletedEvent(DocumentEvent):
    completed_at: datetime
    final_hash: str | None = None
    partial: bool = False


class DocumentExpiredEvent(DocumentEvent):
    expired_at: datetime


class FinalizationFailedEvent(DocumentEvent):
    error: str
    retryable: bool


class SignerActivityEvent(DocumentEvent):
    signer_id: UUID
    occurred_at: datetime
    reminder_count: int | None = None
