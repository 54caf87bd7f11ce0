from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    document_id: UUID | None = Field(default=None, foreign_key="documents.id", index=True)
    tenant_id: UUID | None = Field(default=None, index=True)
    signer_id: UUID | None = Field(default=None)
    event_type: str = Field(index=True)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
