from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from app.core.config import settings
from app.core.logging_setup import mask_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningInvite:
    document_id: UUID
    tenant_id: UUID
    document_title: str
    signer_id: UUID
    signer_name: str
    signer_email: str
    access_token: str
    language: str
    expires_at: datetime | None = None

    @property
    def sign_url(self) -> str:
        return build_sign_url(self.access_token, self.language)


@dataclass(frozen=True)
class SigningReminder:
    invite: SigningInvite
    reminder_number: int


@dataclass(frozen=True)
class VerificationCodeMessage:
    signer_id: UUID
    signer_email: str
    signer_name: str
    code: str
    expires_at: datetime
    language: str


def build_sign_url(token: str, language: str = "en") -> str:
    return f"{settings.resolved_public_app_url()}/{language}/sign/{token}"


class NotificationDispatcher(Protocol):
    def send_signing_invite(self, invite: SigningInvite) -> None:
        ...

    def send_signing_reminder(self, reminder: SigningReminder) -> None:
        ...

    def send_verification_code(self, message: VerificationCodeMessage) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: records deliveries in the log without any transport."""

    def send_signing_invite(self, invite: SigningInvite) -> None:
        logger.info(
            "Signing invite for document %s to %s (token %s)",
            invite.document_id,
            invite.signer_email,
            mask_token(invite.access_token),
        )

    def send_signing_reminder(self, reminder: SigningReminder) -> None:
        logger.info(
            "Reminder #%s for document %s to %s",
            reminder.reminder_number,
            reminder.invite.document_id,
            reminder.invite.signer_email,
        )

    def send_verification_code(self, message: VerificationCodeMessage) -> None:
        # the code itself is never logged
        logger.info("Verification code issued to %s (expires %s)", message.signer_email, message.expires_at)
