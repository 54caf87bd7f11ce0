from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEventRead(BaseModel):
    id: UUID
    created_at: datetime
    event_type: str
    document_id: UUID | None
    tenant_id: UUID | None
    signer_id: UUID | None
    ip_address: str | None
    user_agent: str | None
    details: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class AuditTimelineEntry(BaseModel):
    event_type: str
    occurred_at: datetime
    signer_id: UUID | None = None
    description: str


class AuditSummary(BaseModel):
    document_id: UUID
    document_title: str
    status: str
    original_hash: str | None
    final_hash: str | None
    signers_total: int
    signers_signed: int
    timeline: list[AuditTimelineEntry]
