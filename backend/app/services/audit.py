from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from app.models.audit import AuditLog


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record_event(
        self,
        event_type: str,
        document_id: UUID | None = None,
        tenant_id: UUID | None = None,
        signer_id: UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        log = AuditLog(
            document_id=document_id,
            tenant_id=tenant_id,
            signer_id=signer_id,
            event_type=event_type,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details or {},
        )
        self.session.add(log)
        self.session.commit()
        return log

    def list_events(
        self,
        tenant_id: UUID | None = None,
        event_type: Optional[str] = None,
        document_id: Optional[UUID] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        query = select(AuditLog)
        if tenant_id:
            query = query.where(AuditLog.tenant_id == tenant_id)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        if document_id:
            query = query.where(AuditLog.document_id == document_id)
        if start_at:
            query = query.where(AuditLog.created_at >= start_at)
        if end_at:
            query = query.where(AuditLog.created_at <= end_at)

        total = self.session.exec(
            select(func.count()).select_from(query.subquery())
        ).one()

        items = self.session.exec(
            query.order_by(AuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def document_timeline(self, document_id: UUID) -> list[AuditLog]:
        return list(
            self.session.exec(
                select(AuditLog)
                .where(AuditLog.document_id == document_id)
                .order_by(AuditLog.created_at.asc())
            ).all()
        )
