from __future__ import annotations

import io
import logging
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID, uuid4

from botocore.exceptions import BotoCoreError, ClientError
from pypdf import PdfReader
from pypdf.errors import PyPdfError
from sqlalchemy import or_, update
from sqlmodel import Session, select

from app.core.config import Settings, settings as default_settings
from app.core.errors import (
    InvalidStateError,
    NotFoundError,
    SigningError,
    TransientStorageError,
    ValidationError,
)
from app.models.base import utcnow
from app.models.document import Document, DocumentStatus, FieldType, SignatureField, SigningMode
from app.models.signer import Signer, SignerAuthMethod, SignerStatus
from app.schemas.audit import AuditEventRead, AuditSummary, AuditTimelineEntry
from app.schemas.events import (
    DocumentCompletedEvent,
    DocumentExpiredEvent,
    DocumentSentEvent,
    FinalizationFailedEvent,
    SignatureCompletedEvent,
    SignerActivityEvent,
    SignerAddedEvent,
)
from app.schemas.signing import AcceptSignaturePayload, SignatureFieldRead, SignerRead, SigningContext
from app.services import events as event_names
from app.services.audit import AuditService
from app.services.certificate import CertificateVault
from app.services.events import EventBus
from app.services.finalization import FinalizationPipeline, FinalizationRunner, signing_sort_key
from app.services.notification import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    SigningInvite,
    SigningReminder,
    VerificationCodeMessage,
)
from app.services.pdf_embedder import is_image_value, validate_image_data_url
from app.services.storage import BlobStore, get_storage
from app.utils.email_validation import normalize_signer_email
from app.utils.hashing import sha256_hex
from app.utils.security import (
    generate_access_token,
    generate_verification_code,
    hash_verification_code,
    verification_code_matches,
)

logger = logging.getLogger(__name__)

SIGNER_NOT_FOUND = "Signer not found"
ALREADY_SIGNED = "Document already signed by this signer"

TIMELINE_DESCRIPTIONS = {
    event_names.SIGNER_ADDED: "Signer {name} added",
    event_names.DOCUMENT_SENT: "Document sent for signature",
    event_names.SIGNER_VIEWED: "Document viewed by {name}",
    event_names.SIGNER_VERIFIED: "Identity verified by {name}",
    event_names.REMINDER_SENT: "Reminder sent to {name}",
    event_names.SIGNATURE_COMPLETED: "Signed by {name}",
    event_names.DOCUMENT_COMPLETED: "Document completed",
    event_names.DOCUMENT_EXPIRED: "Document expired",
    event_names.DOCUMENT_FINALIZATION_FAILED: "Finalization failed",
}


class SigningWorkflow:
    """Signer/document lifecycle and the single entry point into finalization."""

    def __init__(
        self,
        session: Session,
        *,
        storage: BlobStore | None = None,
        notifier: NotificationDispatcher | None = None,
        events: EventBus | None = None,
        runner: FinalizationRunner | None = None,
        config: Settings | None = None,
    ) -> None:
        self.session = session
        self.config = config or default_settings
        self.storage = storage or get_storage(self.config)
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.events = events or EventBus()
        self.runner = runner or FinalizationRunner(
            background=self.config.finalize_in_background,
            max_workers=self.config.finalization_workers,
        )
        self.vault = CertificateVault.from_settings(session, self.storage, self.config)
        self.pipeline = FinalizationPipeline(self.storage, self.vault)

    def _for_session(self, session: Session) -> "SigningWorkflow":
        return SigningWorkflow(
            session,
            storage=self.storage,
            notifier=self.notifier,
            events=self.events,
            runner=self.runner,
            config=self.config,
        )

    # Lookups -------------------------------------------------------------------

    def _get_document(self, document_id: UUID) -> Document:
        document = self.session.get(Document, document_id)
        if not document:
            raise NotFoundError("Document not found")
        return document

    def _list_signers(self, document_id: UUID) -> list[Signer]:
        signers = self.session.exec(select(Signer).where(Signer.document_id == document_id)).all()
        return sorted(signers, key=signing_sort_key)

    def _list_fields(self, document_id: UUID, signer_id: UUID | None = None) -> list[SignatureField]:
        query = select(SignatureField).where(SignatureField.document_id == document_id)
        if signer_id is not None:
            query = query.where(SignatureField.signer_id == signer_id)
        return list(self.session.exec(query.order_by(SignatureField.page, SignatureField.y)).all())

    def find_signer_by_token(self, token: str) -> Signer:
        candidate = (token or "").strip()
        signer = None
        if candidate:
            signer = self.session.exec(select(Signer).where(Signer.access_token == candidate)).first()
        if not signer:
            raise NotFoundError(SIGNER_NOT_FOUND)
        return signer

    def are_all_signers_signed(self, document_id: UUID) -> bool:
        signers = self._list_signers(document_id)
        if not signers:
            return False
        return all(signer.status == SignerStatus.SIGNED for signer in signers)

    # Document setup --------------------------------------------------------------

    def register_original(self, document_id: UUID, pdf_bytes: bytes) -> Document:
        document = self._get_document(document_id)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidStateError("Original file can only be replaced while the document is a draft")
        try:
            page_count = len(PdfReader(io.BytesIO(pdf_bytes)).pages)
        except PyPdfError as exc:
            raise ValidationError("File is not a valid PDF") from exc
        if page_count == 0:
            raise ValidationError("PDF has no pages")

        key = f"documents/{document.tenant_id}/{document.id}/original.pdf"
        try:
            self.storage.put(key, pdf_bytes, "application/pdf")
        except (OSError, BotoCoreError, ClientError) as exc:
            raise TransientStorageError(f"Failed to store original document: {exc}") from exc

        document.original_file_key = key
        document.original_hash = sha256_hex(pdf_bytes)
        document.updated_at = utcnow()
        self.session.add(document)
        self.session.commit()
        self.session.refresh(document)
        return document

    def add_signer(
        self,
        document_id: UUID,
        name: str,
        email: str,
        *,
        order: int | None = None,
        auth_method: SignerAuthMethod = SignerAuthMethod.NONE,
    ) -> Signer:
        document = self._get_document(document_id)
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Signer name is required")
        try:
            normalized_email = normalize_signer_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if order is not None and order < 1:
            raise ValidationError("Signer order must be a positive integer")
        if document.signing_mode == SigningMode.SEQUENTIAL and document.status != DocumentStatus.DRAFT:
            # send already validated the ordering; late signers must keep it complete and unique
            if order is None:
                raise InvalidStateError("All signers must have an order in sequential mode")
            if any(existing.order == order for existing in self._list_signers(document.id)):
                raise InvalidStateError("Signer order must be unique")

        signer = Signer(
            document_id=document.id,
            tenant_id=document.tenant_id,
            name=clean_name,
            email=normalized_email,
            order=order,
            auth_method=auth_method,
            access_token=generate_access_token(),
        )
        self.session.add(signer)
        self.session.commit()
        self.session.refresh(signer)

        self.events.publish(
            self.session,
            event_names.SIGNER_ADDED,
            SignerAddedEvent(
                document_id=document.id,
                tenant_id=document.tenant_id,
                signer_id=signer.id,
                email=signer.email,
            ),
            signer_id=signer.id,
        )
        return signer

    def add_field(
        self,
        document_id: UUID,
        signer_id: UUID,
        *,
        field_type: FieldType,
        page: int,
        x: float,
        y: float,
        width: float,
        height: float,
        required: bool = True,
    ) -> SignatureField:
        document = self._get_document(document_id)
        signer = self.session.get(Signer, signer_id)
        if not signer or signer.document_id != document.id:
            raise NotFoundError(SIGNER_NOT_FOUND)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidStateError("Fields can only be added while the document is a draft")
        if not (0.0 <= x <= 1.0 and 0.0 <= y <= 1.0 and 0.0 < width <= 1.0 and 0.0 < height <= 1.0):
            raise ValidationError("Field rectangle must be normalized to [0, 1]")
        if x + width > 1.0 + 1e-9 or y + height > 1.0 + 1e-9:
            raise ValidationError("Field rectangle exceeds the page bounds")
        page_count = self._page_count(document)
        if page < 1 or page > page_count:
            raise ValidationError(f"Page {page} does not exist (document has {page_count} page(s))")

        field = SignatureField(
            document_id=document.id,
            signer_id=signer.id,
            type=field_type,
            page=page,
            x=x,
            y=y,
            width=width,
            height=height,
            required=required,
        )
        self.session.add(field)
        self.session.commit()
        self.session.refresh(field)
        return field

    def _page_count(self, document: Document) -> int:
        if not document.original_file_key:
            raise InvalidStateError("Document has no original file")
        try:
            data = self.storage.get(document.original_file_key)
        except (OSError, BotoCoreError, ClientError) as exc:
            raise TransientStorageError(f"Failed to read original document: {exc}") from exc
        return len(PdfReader(io.BytesIO(data)).pages)

    # Sending ---------------------------------------------------------------------

    def _ensure_actionable(self, document: Document, now: datetime) -> None:
        if document.status == DocumentStatus.COMPLETED:
            raise InvalidStateError("Document is already completed")
        if document.status == DocumentStatus.EXPIRED:
            raise InvalidStateError("Document has expired")
        if document.expires_at and now > document.expires_at:
            raise InvalidStateError("Document has expired")

    def send_document(self, document_id: UUID) -> Document:
        document = self._get_document(document_id)
        now = utcnow()
        self._ensure_actionable(document, now)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidStateError("Document has already been sent")
        if not document.original_file_key:
            raise InvalidStateError("Document has no original file")

        signers = self._list_signers(document.id)
        if not signers:
            raise InvalidStateError("At least one signer is required")
        fields = self._list_fields(document.id)
        if not any(field.required for field in fields):
            raise InvalidStateError("At least one required field is required")

        if document.signing_mode == SigningMode.SEQUENTIAL:
            orders = [signer.order for signer in signers]
            if any(order is None for order in orders):
                raise InvalidStateError("All signers must have an order in sequential mode")
            if len(set(orders)) != len(orders):
                raise InvalidStateError("Signer order must be unique")
            recipients = [signers[0]]
        else:
            recipients = signers

        if not self._transition(document.id, DocumentStatus.DRAFT, DocumentStatus.PENDING_SIGNATURES, sent_at=now):
            self.session.rollback()
            raise InvalidStateError("Document has already been sent")
        for signer in recipients:
            signer.notified_at = now
            self.session.add(signer)
        self.session.commit()
        self.session.refresh(document)

        for signer in recipients:
            self._dispatch_invite(document, signer)

        self.events.publish(
            self.session,
            event_names.DOCUMENT_SENT,
            DocumentSentEvent(
                document_id=document.id,
                tenant_id=document.tenant_id,
                signing_mode=document.signing_mode,
                sent_at=now,
            ),
        )
        return document

    def _transition(self, document_id: UUID, current: DocumentStatus, target: DocumentStatus, **values) -> bool:
        statement = (
            update(Document)
            .where(Document.id == document_id, Document.status == current)
            .values(status=target, updated_at=utcnow(), **values)
        )
        return self.session.connection().execute(statement).rowcount == 1

    def _invite_for(self, document: Document, signer: Signer) -> SigningInvite:
        return SigningInvite(
            document_id=document.id,
            tenant_id=document.tenant_id,
            document_title=document.title,
            signer_id=signer.id,
            signer_name=signer.name,
            signer_email=signer.email,
            access_token=signer.access_token,
            language=document.signing_language,
            expires_at=document.expires_at,
        )

    def _dispatch_invite(self, document: Document, signer: Signer) -> None:
        try:
            self.notifier.send_signing_invite(self._invite_for(document, signer))
        except Exception:  # noqa: BLE001 - notifications are fire-and-forget
            logger.exception("Failed to dispatch signing invite to signer %s", signer.id)

    def remind_signer(self, document: Document, signer: Signer, now: datetime | None = None) -> None:
        now = now or utcnow()
        signer.reminder_count += 1
        signer.notified_at = now
        signer.updated_at = now
        self.session.add(signer)
        self.session.commit()
        try:
            self.notifier.send_signing_reminder(
                SigningReminder(invite=self._invite_for(document, signer), reminder_number=signer.reminder_count)
            )
        except Exception:  # noqa: BLE001 - notifications are fire-and-forget
            logger.exception("Failed to dispatch reminder to signer %s", signer.id)
        self.events.publish(
            self.session,
            event_names.REMINDER_SENT,
            SignerActivityEvent(
                document_id=document.id,
                tenant_id=document.tenant_id,
                signer_id=signer.id,
                occurred_at=now,
                reminder_count=signer.reminder_count,
            ),
            signer_id=signer.id,
        )

    # Signer session ----------------------------------------------------------------

    def _is_signers_turn(self, document: Document, signer: Signer) -> bool:
        """In sequential mode only the first pending signer by (order, created_at) may act."""
        if document.signing_mode != SigningMode.SEQUENTIAL:
            return True
        pending = [other for other in self._list_signers(document.id) if other.status == SignerStatus.PENDING]
        return bool(pending) and pending[0].id == signer.id

    def get_signing_context(self, token: str) -> SigningContext:
        signer = self.find_signer_by_token(token)
        document = self._get_document(signer.document_id)
        if signer.viewed_at is None:
            now = utcnow()
            signer.viewed_at = now
            self.session.add(signer)
            self.session.commit()
            self.session.refresh(signer)
            self.events.publish(
                self.session,
                event_names.SIGNER_VIEWED,
                SignerActivityEvent(
                    document_id=document.id, tenant_id=document.tenant_id, signer_id=signer.id, occurred_at=now
                ),
                signer_id=signer.id,
            )
        return SigningContext(
            document_id=document.id,
            document_title=document.title,
            document_status=document.status,
            signing_mode=document.signing_mode,
            signing_language=document.signing_language,
            expires_at=document.expires_at,
            signer=SignerRead.model_validate(signer),
            fields=[SignatureFieldRead.model_validate(f) for f in self._list_fields(document.id, signer.id)],
            requires_verification=signer.auth_method == SignerAuthMethod.EMAIL and signer.verified_at is None,
            is_turn=self._is_signers_turn(document, signer),
        )

    def send_verification_code(self, token: str) -> datetime:
        signer = self.find_signer_by_token(token)
        document = self._get_document(signer.document_id)
        if signer.status == SignerStatus.SIGNED:
            raise InvalidStateError(ALREADY_SIGNED)
        now = utcnow()
        self._ensure_actionable(document, now)

        code = generate_verification_code()
        expires_at = now + timedelta(minutes=self.config.verification_code_ttl_minutes)
        signer.verification_code_hash = hash_verification_code(code)
        signer.verification_expires_at = expires_at
        signer.verification_attempts = 0
        signer.updated_at = now
        self.session.add(signer)
        self.session.commit()

        try:
            self.notifier.send_verification_code(
                VerificationCodeMessage(
                    signer_id=signer.id,
                    signer_email=signer.email,
                    signer_name=signer.name,
                    code=code,
                    expires_at=expires_at,
                    language=document.signing_language,
                )
            )
        except Exception:  # noqa: BLE001 - notifications are fire-and-forget
            logger.exception("Failed to dispatch verification code to signer %s", signer.id)
        return expires_at

    def verify_code(self, token: str, code: str) -> Signer:
        signer = self.find_signer_by_token(token)
        if not signer.verification_code_hash or not signer.verification_expires_at:
            raise ValidationError("No verification code was sent. Please request a new code.")
        if signer.verification_attempts >= self.config.verification_max_attempts:
            raise InvalidStateError("Maximum verification attempts exceeded. Please request a new code.")
        now = utcnow()
        if now > signer.verification_expires_at:
            raise ValidationError("Verification code has expired. Please request a new code.")

        if not verification_code_matches(code or "", signer.verification_code_hash):
            signer.verification_attempts += 1
            self.session.add(signer)
            self.session.commit()
            raise ValidationError("Invalid verification code")

        signer.verified_at = now
        signer.verification_code_hash = None
        signer.verification_expires_at = None
        signer.verification_attempts = 0
        self.session.add(signer)
        self.session.commit()
        self.session.refresh(signer)
        self.events.publish(
            self.session,
            event_names.SIGNER_VERIFIED,
            SignerActivityEvent(
                document_id=signer.document_id, tenant_id=signer.tenant_id, signer_id=signer.id, occurred_at=now
            ),
            signer_id=signer.id,
        )
        return signer

    # Signing -------------------------------------------------------------------------

    def accept_signature(self, token: str, payload: AcceptSignaturePayload) -> Signer:
        signer = self.find_signer_by_token(token)
        document = self._get_document(signer.document_id)
        now = utcnow()

        if signer.status == SignerStatus.SIGNED:
            raise InvalidStateError(ALREADY_SIGNED)
        self._ensure_actionable(document, now)
        if document.status != DocumentStatus.PENDING_SIGNATURES:
            raise InvalidStateError("Document has not been sent for signature")
        if signer.auth_method == SignerAuthMethod.EMAIL and signer.verified_at is None:
            raise InvalidStateError("Verification required")
        if not self._is_signers_turn(document, signer):
            raise InvalidStateError("It is not this signer's turn to sign yet")
        if not payload.consent:
            raise ValidationError("Consent is required to sign")

        signature_data = (payload.signature_data or "").strip() or None
        if signature_data:
            try:
                validate_image_data_url(signature_data)
            except ValueError as exc:
                raise ValidationError("Signature image must be a PNG or JPEG data URL") from exc

        own_fields = {field.id: field for field in self._list_fields(document.id, signer.id)}
        captured = self._apply_captured_values(own_fields, payload, signature_data)

        statement = (
            update(Signer)
            .where(Signer.id == signer.id, Signer.status == SignerStatus.PENDING)
            .values(
                status=SignerStatus.SIGNED,
                signed_at=now,
                ip_address=payload.ip_address or "unknown",
                user_agent=payload.user_agent or "unknown",
                latitude=payload.latitude,
                longitude=payload.longitude,
                signature_data=signature_data,
                updated_at=now,
            )
        )
        if self.session.connection().execute(statement).rowcount != 1:
            self.session.rollback()
            raise InvalidStateError(ALREADY_SIGNED)
        for field in captured:
            self.session.add(field)
        self.session.commit()
        self.session.refresh(signer)

        self.events.publish(
            self.session,
            event_names.SIGNATURE_COMPLETED,
            SignatureCompletedEvent(
                document_id=document.id,
                tenant_id=document.tenant_id,
                signer_id=signer.id,
                signed_at=now,
            ),
            signer_id=signer.id,
            ip_address=signer.ip_address,
            user_agent=signer.user_agent,
        )

        if self.are_all_signers_signed(document.id):
            self._schedule_finalization(document.id)
        elif document.signing_mode == SigningMode.SEQUENTIAL:
            self._notify_next_signer(document)
        return signer

    def _apply_captured_values(
        self,
        own_fields: dict[UUID, SignatureField],
        payload: AcceptSignaturePayload,
        signature_data: str | None,
    ) -> list[SignatureField]:
        updates: dict[UUID, str] = {}
        for item in payload.field_values:
            if item.field_id not in own_fields:
                raise NotFoundError("Field not found")
            if is_image_value(item.value):
                try:
                    validate_image_data_url(item.value)
                except ValueError as exc:
                    raise ValidationError("Field image must be a PNG or JPEG data URL") from exc
            updates[item.field_id] = item.value

        # Drawn signatures fill empty signature boxes
        if signature_data:
            for field in own_fields.values():
                if field.type == FieldType.SIGNATURE and not updates.get(field.id) and not field.value:
                    updates[field.id] = signature_data

        missing = [
            field for field in own_fields.values() if field.required and not (updates.get(field.id) or field.value)
        ]
        if missing:
            kinds = ", ".join(sorted({field.type.value for field in missing}))
            raise ValidationError(f"Required fields are missing: {kinds}")

        changed: list[SignatureField] = []
        for field_id, value in updates.items():
            field = own_fields[field_id]
            field.value = value or None
            field.updated_at = utcnow()
            changed.append(field)
        return changed

    def _notify_next_signer(self, document: Document) -> Signer | None:
        pending = [signer for signer in self._list_signers(document.id) if signer.status == SignerStatus.PENDING]
        if not pending:
            return None
        next_signer = pending[0]
        next_signer.notified_at = utcnow()
        self.session.add(next_signer)
        self.session.commit()
        self.session.refresh(next_signer)
        self._dispatch_invite(document, next_signer)
        return next_signer

    # Finalization --------------------------------------------------------------------------

    def claim_finalization(self, document_id: UUID) -> str | None:
        """Atomically take the finalization claim; ``None`` when someone else holds it."""
        claim = uuid4().hex
        now = utcnow()
        stale_before = now - timedelta(seconds=self.config.finalization_claim_ttl_seconds)
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.PENDING_SIGNATURES,
                or_(Document.finalization_claim.is_(None), Document.finalization_claimed_at < stale_before),
            )
            .values(finalization_claim=claim, finalization_claimed_at=now)
        )
        won = self.session.connection().execute(statement).rowcount == 1
        self.session.commit()
        return claim if won else None

    def _release_claim(self, document_id: UUID, claim: str) -> None:
        self.session.rollback()
        statement = (
            update(Document)
            .where(Document.id == document_id, Document.finalization_claim == claim)
            .values(finalization_claim=None, finalization_claimed_at=None)
        )
        self.session.connection().execute(statement)
        self.session.commit()

    def finalize_document(self, document_id: UUID, *, allow_partial: bool = False) -> Document | None:
        """Run the finalization pipeline at most once for the document.

        Returns the completed document, or ``None`` when another caller already
        holds the claim or finished the job. Pipeline errors release the claim and
        propagate; calling again retries.
        """
        document = self._get_document(document_id)
        if document.status == DocumentStatus.COMPLETED:
            return None
        signers = self._list_signers(document_id)
        if allow_partial:
            if not any(signer.status == SignerStatus.SIGNED for signer in signers):
                raise InvalidStateError("No signer has signed this document")
        elif not self.are_all_signers_signed(document_id):
            raise InvalidStateError("Not all signers have signed this document")

        claim = self.claim_finalization(document_id)
        if claim is None:
            logger.info("Finalization of document %s already claimed", document_id)
            return None

        self.session.refresh(document)
        try:
            result = self.pipeline.run(document, self._list_signers(document_id), self._list_fields(document_id))
        except Exception:
            self._release_claim(document_id, claim)
            raise

        now = utcnow()
        statement = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.PENDING_SIGNATURES,
                Document.finalization_claim == claim,
            )
            .values(
                status=DocumentStatus.COMPLETED,
                final_file_key=result.final_key,
                final_hash=result.final_hash,
                original_hash=result.original_hash,
                completed_at=now,
                updated_at=now,
                version=Document.version + 1,
                finalization_claim=None,
                finalization_claimed_at=None,
            )
        )
        if self.session.connection().execute(statement).rowcount != 1:
            self.session.rollback()
            logger.warning("Finalization claim for document %s was lost before completion", document_id)
            return None
        self.session.commit()
        self.session.refresh(document)

        self.events.publish(
            self.session,
            event_names.DOCUMENT_COMPLETED,
            DocumentCompletedEvent(
                document_id=document.id,
                tenant_id=document.tenant_id,
                completed_at=now,
                final_hash=result.final_hash,
                partial=result.signer_count < len(signers),
            ),
        )
        return document

    def run_finalization(self, document_id: UUID, *, allow_partial: bool = False) -> Document | None:
        """Finalize without raising domain errors; failures are logged and audited."""
        try:
            return self.finalize_document(document_id, allow_partial=allow_partial)
        except SigningError as exc:
            self.session.rollback()
            logger.error("Finalization of document %s failed: %s", document_id, exc)
            document = self.session.get(Document, document_id)
            if document is not None:
                self.events.publish(
                    self.session,
                    event_names.DOCUMENT_FINALIZATION_FAILED,
                    FinalizationFailedEvent(
                        document_id=document.id,
                        tenant_id=document.tenant_id,
                        error=str(exc),
                        retryable=isinstance(exc, TransientStorageError),
                    ),
                )
            return None

    def _schedule_finalization(self, document_id: UUID) -> None:
        if not self.runner.background:
            self.runner.submit(lambda: self.run_finalization(document_id))
            return

        engine = self.session.get_bind()

        def job() -> None:
            with Session(engine) as session:
                self._for_session(session).run_finalization(document_id)

        self.runner.submit(job)

    # Expiry ----------------------------------------------------------------------------------

    def expire_document(self, document_id: UUID, now: datetime | None = None) -> Document | None:
        """Close an overdue document.

        With at least one signature the document is finalized with the signatures
        collected so far (COMPLETED); otherwise it becomes EXPIRED.
        """
        now = now or utcnow()
        document = self._get_document(document_id)
        if document.status != DocumentStatus.PENDING_SIGNATURES:
            return None
        if document.expires_at is None or document.expires_at > now:
            return None

        if any(signer.status == SignerStatus.SIGNED for signer in self._list_signers(document_id)):
            return self.finalize_document(document_id, allow_partial=True)

        if not self._transition(
            document_id,
            DocumentStatus.PENDING_SIGNATURES,
            DocumentStatus.EXPIRED,
        ):
            self.session.rollback()
            return None
        self.session.commit()
        self.session.refresh(document)
        self.events.publish(
            self.session,
            event_names.DOCUMENT_EXPIRED,
            DocumentExpiredEvent(document_id=document.id, tenant_id=document.tenant_id, expired_at=now),
        )
        return document

    # Audit ---------------------------------------------------------------------------------------

    def get_audit_summary(self, document_id: UUID) -> AuditSummary:
        document = self._get_document(document_id)
        signers = self._list_signers(document_id)
        names = {signer.id: signer.name for signer in signers}
        timeline = [
            AuditTimelineEntry(
                event_type=log.event_type,
                occurred_at=log.created_at,
                signer_id=log.signer_id,
                description=TIMELINE_DESCRIPTIONS.get(log.event_type, log.event_type).format(
                    name=names.get(log.signer_id, "unknown signer")
                ),
            )
            for log in AuditService(self.session).document_timeline(document_id)
        ]
        return AuditSummary(
            document_id=document.id,
            document_title=document.title,
            status=document.status.value,
            original_hash=document.original_hash,
            final_hash=document.final_hash,
            signers_total=len(signers),
            signers_signed=sum(1 for signer in signers if signer.status == SignerStatus.SIGNED),
            timeline=timeline,
        )

    def list_audit_events(
        self,
        tenant_id: UUID,
        *,
        event_type: str | None = None,
        document_id: UUID | None = None,
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditEventRead], int]:
        """Tenant-scoped audit log, newest first."""
        items, total = AuditService(self.session).list_events(
            tenant_id=tenant_id,
            event_type=event_type,
            document_id=document_id,
            start_at=start_at,
            end_at=end_at,
            page=max(page, 1),
            page_size=min(max(page_size, 1), 200),
        )
        return [AuditEventRead.model_validate(item) for item in items], total

    def pending_signers(self, document_id: UUID) -> Iterable[Signer]:
        return [signer for signer in self._list_signers(document_id) if signer.status == SignerStatus.PENDING]
