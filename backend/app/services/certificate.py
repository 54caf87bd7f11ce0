"""Tenant PKCS#12 certificates and the optional certificate signing step.

The passphrase only ever exists in clear inside ``Pkcs12DocumentSigner`` for
the duration of a signing call; at rest it is AES-256-GCM encrypted with the
key handed to ``CertificateVault``.
"""
from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from cryptography import x509
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.sign import signers
from pyhanko.sign.fields import SigFieldSpec, SigSeedSubFilter
from pyhanko.sign.signers import PdfSignatureMetadata, PdfSigner
from pyhanko.sign.timestamps import HTTPTimeStamper
from sqlmodel import Session, select

from app.core.config import Settings
from app.core.errors import IntegrityFailure, NotFoundError, TransientStorageError, ValidationError
from app.models.base import utcnow
from app.models.tenant import TenantCertificate
from app.schemas.certificate import CertificateInfo, CertificateStatus
from app.services.audit import AuditService
from app.services.events import CERTIFICATE_CONFIGURED, CERTIFICATE_REMOVED
from app.services.storage import BlobStore

logger = logging.getLogger(__name__)

PKCS12_CONTENT_TYPE = "application/x-pkcs12"
INVALID_CERTIFICATE_MESSAGE = "Invalid certificate file or password"
IV_LENGTH = 16
TAG_LENGTH = 16
SIGNATURE_FIELD_NAME = "SignFlowSignature"


def certificate_key(tenant_id: UUID) -> str:
    return f"tenants/{tenant_id}/certificate.p12"


class PassphraseCipher:
    """AES-256-GCM with a random 16-byte IV, serialized as ``ivhex:taghex:ciphertexthex``."""

    def __init__(self, key_hex: str | None) -> None:
        try:
            key = bytes.fromhex((key_hex or "").strip())
        except ValueError as exc:
            raise ValueError("Certificate encryption key must be hex encoded") from exc
        if len(key) != 32:
            raise ValueError("Certificate encryption key must be 32 bytes (64 hex characters)")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        try:
            iv_hex, tag_hex, ciphertext_hex = token.split(":")
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except (ValueError, InvalidTag) as exc:
            raise IntegrityFailure("Stored certificate passphrase could not be decrypted") from exc


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if attributes:
        return str(attributes[0].value)
    for attribute in name:
        return str(attribute.value)
    return "Unknown"


def extract_certificate_info(data: bytes, passphrase: str) -> CertificateInfo:
    """Parse a PKCS#12 container and return its metadata.

    Every parsing failure (bad structure, wrong passphrase, missing key or
    certificate) collapses into the same message.
    """
    try:
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            data, passphrase.encode("utf-8") if passphrase else None
        )
    except (ValueError, TypeError) as exc:
        raise ValidationError(INVALID_CERTIFICATE_MESSAGE) from exc
    if certificate is None or private_key is None:
        raise ValidationError(INVALID_CERTIFICATE_MESSAGE)

    expires_at = certificate.not_valid_after_utc.replace(tzinfo=None)
    if expires_at <= utcnow():
        raise ValidationError("Certificate has expired")

    return CertificateInfo(
        subject=_common_name(certificate.subject),
        issuer=_common_name(certificate.issuer),
        expires_at=expires_at,
    )


# Signing strategies ------------------------------------------------------------


class DocumentSigner(Protocol):
    applies_signature: bool

    def sign(self, pdf_bytes: bytes) -> bytes:
        ...


class PassThroughSigner:
    """Used when the tenant has no usable certificate: returns the bytes unchanged."""

    applies_signature = False

    def __init__(self, reason: str = "no certificate configured") -> None:
        self.reason = reason

    def sign(self, pdf_bytes: bytes) -> bytes:
        logger.info("Skipping certificate signature: %s", self.reason)
        return pdf_bytes


@dataclass
class Pkcs12DocumentSigner:
    pkcs12_data: bytes = field(repr=False)
    passphrase: str = field(repr=False)
    reason: str | None = None
    location: str | None = None
    timestamp_url: str | None = None
    bytes_reserved: int = 8192
    field_name: str = SIGNATURE_FIELD_NAME

    applies_signature = True

    def sign(self, pdf_bytes: bytes) -> bytes:
        """PAdES signature on an invisible field of the last page."""
        try:
            signer = signers.SimpleSigner.load_pkcs12_data(
                self.pkcs12_data,
                other_certs=None,
                passphrase=self.passphrase.encode("utf-8") if self.passphrase else None,
            )
            if signer is None:
                raise IntegrityFailure("Failed to digitally sign PDF: certificate could not be loaded")
            writer = IncrementalPdfFileWriter(io.BytesIO(pdf_bytes), strict=False)
            metadata = PdfSignatureMetadata(
                field_name=self.field_name,
                reason=self.reason,
                location=self.location,
                subfilter=SigSeedSubFilter.PADES,
            )
            timestamper = HTTPTimeStamper(self.timestamp_url) if self.timestamp_url else None
            pdf_signer = PdfSigner(
                metadata,
                signer=signer,
                timestamper=timestamper,
                new_field_spec=SigFieldSpec(sig_field_name=self.field_name, on_page=-1),
            )
            output = io.BytesIO()
            pdf_signer.sign_pdf(writer, output=output, bytes_reserved=self.bytes_reserved)
            return output.getvalue()
        except IntegrityFailure:
            raise
        except Exception as exc:
            raise IntegrityFailure(f"Failed to digitally sign PDF: {exc}") from exc


# Vault ---------------------------------------------------------------------------


class CertificateVault:
    def __init__(
        self,
        session: Session,
        storage: BlobStore,
        encryption_key: str | None,
        *,
        signature_reason: str | None = None,
        signature_location: str | None = None,
        timestamp_url: str | None = None,
        bytes_reserved: int = 8192,
    ) -> None:
        if bytes_reserved <= 0 or bytes_reserved % 2:
            raise ValueError("bytes_reserved must be a positive even number")
        self.session = session
        self.storage = storage
        self.encryption_key = encryption_key
        self.signature_reason = signature_reason
        self.signature_location = signature_location
        self.timestamp_url = timestamp_url
        self.bytes_reserved = bytes_reserved

    @classmethod
    def from_settings(cls, session: Session, storage: BlobStore, settings: Settings) -> "CertificateVault":
        return cls(
            session,
            storage,
            settings.certificate_encryption_key,
            signature_reason=settings.certificate_signature_reason,
            signature_location=settings.certificate_signature_location,
            timestamp_url=settings.certificate_timestamp_url,
            bytes_reserved=settings.certificate_signature_bytes_reserved,
        )

    def _cipher(self) -> PassphraseCipher:
        return PassphraseCipher(self.encryption_key)

    def _get(self, tenant_id: UUID) -> TenantCertificate | None:
        return self.session.exec(
            select(TenantCertificate).where(TenantCertificate.tenant_id == tenant_id)
        ).first()

    def upload_certificate(self, tenant_id: UUID, data: bytes, passphrase: str) -> CertificateStatus:
        info = extract_certificate_info(data, passphrase)
        encrypted = self._cipher().encrypt(passphrase)

        key = certificate_key(tenant_id)
        try:
            self.storage.put(key, data, PKCS12_CONTENT_TYPE)
        except (OSError, BotoCoreError, ClientError) as exc:
            raise TransientStorageError(f"Failed to store certificate: {exc}") from exc

        now = utcnow()
        record = self._get(tenant_id)
        if record is None:
            record = TenantCertificate(
                tenant_id=tenant_id,
                file_key=key,
                encrypted_passphrase=encrypted,
                subject=info.subject,
                issuer=info.issuer,
                expires_at=info.expires_at,
                configured_at=now,
            )
        else:
            record.file_key = key
            record.encrypted_passphrase = encrypted
            record.subject = info.subject
            record.issuer = info.issuer
            record.expires_at = info.expires_at
            record.configured_at = now
            record.updated_at = now
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)

        AuditService(self.session).record_event(
            CERTIFICATE_CONFIGURED,
            tenant_id=tenant_id,
            details={
                "subject": info.subject,
                "issuer": info.issuer,
                "expiresAt": info.expires_at.isoformat(),
            },
        )
        logger.info("Certificate configured for tenant %s (subject=%s)", tenant_id, info.subject)
        return self._status(record)

    def get_certificate_status(self, tenant_id: UUID) -> CertificateStatus:
        record = self._get(tenant_id)
        if record is None:
            return CertificateStatus(configured=False)
        return self._status(record)

    def _status(self, record: TenantCertificate) -> CertificateStatus:
        return CertificateStatus(
            configured=True,
            subject=record.subject,
            issuer=record.issuer,
            expires_at=record.expires_at,
            configured_at=record.configured_at,
            is_expired=record.expires_at <= utcnow(),
        )

    def certificate_info(self, tenant_id: UUID) -> CertificateInfo | None:
        record = self._get(tenant_id)
        if record is None or record.expires_at <= utcnow():
            return None
        return CertificateInfo(subject=record.subject, issuer=record.issuer, expires_at=record.expires_at)

    def remove_certificate(self, tenant_id: UUID) -> None:
        record = self._get(tenant_id)
        if record is None:
            raise NotFoundError("No certificate configured")
        try:
            self.storage.delete(record.file_key)
        except (OSError, BotoCoreError, ClientError) as exc:
            logger.warning("Failed to delete certificate blob %s: %s", record.file_key, exc)
        self.session.delete(record)
        self.session.commit()
        AuditService(self.session).record_event(CERTIFICATE_REMOVED, tenant_id=tenant_id)

    def resolve_signer(self, tenant_id: UUID) -> DocumentSigner:
        record = self._get(tenant_id)
        if record is None:
            return PassThroughSigner()
        if record.expires_at <= utcnow():
            logger.warning("Certificate for tenant %s expired at %s; document left unsigned", tenant_id, record.expires_at)
            return PassThroughSigner(reason="certificate expired")

        try:
            cipher = self._cipher()
        except ValueError as exc:
            raise IntegrityFailure(f"Certificate encryption key unavailable: {exc}") from exc
        passphrase = cipher.decrypt(record.encrypted_passphrase)
        try:
            data = self.storage.get(record.file_key)
        except (OSError, BotoCoreError, ClientError) as exc:
            raise TransientStorageError(f"Failed to load certificate: {exc}") from exc

        return Pkcs12DocumentSigner(
            pkcs12_data=data,
            passphrase=passphrase,
            reason=self.signature_reason,
            location=self.signature_location,
            timestamp_url=self.timestamp_url,
            bytes_reserved=self.bytes_reserved,
        )
