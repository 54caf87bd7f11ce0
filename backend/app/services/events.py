from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from sqlmodel import Session

from app.schemas.events import DocumentEvent
from app.services.audit import AuditService

logger = logging.getLogger(__name__)

SIGNER_ADDED = "signer.added"
DOCUMENT_SENT = "document.sent"
SIGNATURE_COMPLETED = "signature.completed"
DOCUMENT_COMPLETED = "document.completed"
DOCUMENT_EXPIRED = "document.expired"
DOCUMENT_FINALIZATION_FAILED = "document.finalization_failed"
SIGNER_VIEWED = "signer.viewed"
SIGNER_VERIFIED = "signer.verified"
REMINDER_SENT = "signer.reminder_sent"
CERTIFICATE_CONFIGURED = "certificate.configured"
CERTIFICATE_REMOVED = "certificate.removed"

EventHandler = Callable[[str, dict], None]


class EventBus:
    """Persists domain events to the audit log and fans them out in-process.

    Delivery to subscribers is fire-and-forget: a failing handler is logged
    and never breaks the operation that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name].append(handler)

    def publish(
        self,
        session: Session,
        event_name: str,
        event: DocumentEvent,
        *,
        signer_id=None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> dict:
        payload = event.to_payload()
        AuditService(session).record_event(
            event_name,
            document_id=event.document_id,
            tenant_id=event.tenant_id,
            signer_id=signer_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=payload,
        )
        for handler in list(self._handlers.get(event_name, ())) + list(self._handlers.get("*", ())):
            try:
                handler(event_name, payload)
            except Exception:  # noqa: BLE001 - subscribers must not break the workflow
                logger.exception("Event handler failed for %s", event_name)
        return payload
