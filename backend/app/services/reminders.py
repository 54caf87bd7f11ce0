from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlmodel import Session, select

from app.core.errors import SigningError
from app.models.base import utcnow
from app.models.document import Document, DocumentStatus
from app.services.workflow import SigningWorkflow

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    reminders_sent: int = 0
    expired: list[UUID] = field(default_factory=list)
    completed: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)


class ReminderSweep:
    """Periodic job: re-notifies pending signers and closes overdue documents."""

    def __init__(self, session: Session, workflow: SigningWorkflow, *, max_reminders: int | None = None) -> None:
        self.session = session
        self.workflow = workflow
        self.max_reminders = max_reminders if max_reminders is not None else workflow.config.reminder_max_count

    def run(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        report.reminders_sent = self.send_due_reminders(now)
        self.close_overdue_documents(now, report)
        logger.info(
            "Sweep finished: %s reminder(s), %s expired, %s completed, %s failed",
            report.reminders_sent,
            len(report.expired),
            len(report.completed),
            len(report.failed),
        )
        return report

    def send_due_reminders(self, now: datetime) -> int:
        documents = self.session.exec(
            select(Document).where(
                Document.status == DocumentStatus.PENDING_SIGNATURES,
                Document.reminder_interval.is_not(None),
            )
        ).all()

        sent = 0
        for document in documents:
            if document.expires_at and document.expires_at <= now:
                continue
            interval = timedelta(days=document.reminder_interval.days)
            for signer in self.workflow.pending_signers(document.id):
                if signer.notified_at is None or signer.reminder_count >= self.max_reminders:
                    continue
                if now - signer.notified_at < interval:
                    continue
                self.workflow.remind_signer(document, signer, now)
                sent += 1
        return sent

    def close_overdue_documents(self, now: datetime, report: SweepReport) -> None:
        overdue = self.session.exec(
            select(Document.id).where(
                Document.status == DocumentStatus.PENDING_SIGNATURES,
                Document.expires_at.is_not(None),
                Document.expires_at <= now,
            )
        ).all()

        for document_id in overdue:
            try:
                document = self.workflow.expire_document(document_id, now)
            except SigningError as exc:
                self.session.rollback()
                logger.error("Could not close overdue document %s: %s", document_id, exc)
                report.failed.append(document_id)
                continue
            if document is None:
                continue
            if document.status == DocumentStatus.COMPLETED:
                report.completed.append(document_id)
            else:
                report.expired.append(document_id)


def run_reminder_sweep(
    session: Session, now: datetime | None = None, *, workflow: SigningWorkflow | None = None
) -> SweepReport:
    return ReminderSweep(session, workflow or SigningWorkflow(session)).run(now)
