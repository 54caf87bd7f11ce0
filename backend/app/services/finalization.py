from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import IntegrityFailure, SigningError, TransientStorageError
from app.models.base import utcnow
from app.models.document import Document, FieldType, SignatureField
from app.models.signer import Signer, SignerStatus
from app.services.certificate import CertificateVault
from app.services.evidence import EvidencePageComposer, SignerEvidence
from app.services.pdf_embedder import PdfFieldEmbedder, decode_image_data_url, is_image_value
from app.services.storage import BlobStore
from app.utils.hashing import sha256_hex

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
STORAGE_ERRORS = (OSError, BotoCoreError, ClientError)


def final_file_key(document: Document) -> str:
    return f"documents/{document.tenant_id}/{document.id}/final.pdf"


def signing_sort_key(signer: Signer) -> tuple:
    return (signer.order is None, signer.order or 0, signer.created_at)


@dataclass
class FinalizationResult:
    final_key: str
    final_hash: str
    original_hash: str
    certificate_signed: bool
    signer_count: int
    final_bytes: bytes = field(repr=False, default=b"")


class FinalizationPipeline:
    """Embed field values, append the evidence page, sign, hash and persist.

    Re-running it for the same inputs overwrites the same storage key; only
    the "generated at" stamp of the evidence page differs between runs.
    """

    def __init__(
        self,
        storage: BlobStore,
        vault: CertificateVault,
        *,
        embedder: PdfFieldEmbedder | None = None,
        composer: EvidencePageComposer | None = None,
        clock: Callable = utcnow,
    ) -> None:
        self.storage = storage
        self.vault = vault
        self.embedder = embedder or PdfFieldEmbedder()
        self.composer = composer or EvidencePageComposer()
        self.clock = clock

    def run(
        self,
        document: Document,
        signers: Sequence[Signer],
        fields: Sequence[SignatureField],
    ) -> FinalizationResult:
        original = self._load_original(document)
        original_hash = sha256_hex(original)
        if document.original_hash and document.original_hash != original_hash:
            raise IntegrityFailure("Original document does not match its recorded hash")

        signed = sorted((s for s in signers if s.status == SignerStatus.SIGNED), key=signing_sort_key)
        signed_ids = {signer.id for signer in signed}
        try:
            embedded = self.embedder.embed(original, [f for f in fields if f.signer_id in signed_ids])
            composed = self.composer.compose(
                embedded,
                title=document.title,
                signers=[self._evidence_for(signer, fields) for signer in signed],
                generated_at=self.clock(),
                language=document.signing_language,
                document_id=str(document.id),
                original_hash=original_hash,
                certificate=self.vault.certificate_info(document.tenant_id),
            )
        except SigningError:
            raise
        except Exception as exc:
            # corrupt images and malformed PDFs surface from pypdf, reportlab or Pillow
            raise IntegrityFailure(f"Failed to render final document: {exc}") from exc

        document_signer = self.vault.resolve_signer(document.tenant_id)
        final_bytes = document_signer.sign(composed)
        final_hash = sha256_hex(final_bytes)

        key = final_file_key(document)
        try:
            self.storage.put(key, final_bytes, PDF_CONTENT_TYPE)
        except STORAGE_ERRORS as exc:
            raise TransientStorageError(f"Failed to store final document: {exc}") from exc

        logger.info(
            "Document %s finalized (%s signer(s), certificate=%s, sha256=%s)",
            document.id,
            len(signed),
            document_signer.applies_signature,
            final_hash,
        )
        return FinalizationResult(
            final_key=key,
            final_hash=final_hash,
            original_hash=original_hash,
            certificate_signed=document_signer.applies_signature,
            signer_count=len(signed),
            final_bytes=final_bytes,
        )

    def _load_original(self, document: Document) -> bytes:
        if not document.original_file_key:
            raise IntegrityFailure("Document has no original file")
        try:
            return self.storage.get(document.original_file_key)
        except STORAGE_ERRORS as exc:
            raise TransientStorageError(f"Failed to read original document: {exc}") from exc

    @staticmethod
    def _evidence_for(signer: Signer, fields: Sequence[SignatureField]) -> SignerEvidence:
        image_source = signer.signature_data
        if not image_source:
            image_source = next(
                (
                    f.value
                    for f in fields
                    if f.signer_id == signer.id
                    and f.type in (FieldType.SIGNATURE, FieldType.INITIALS)
                    and f.value
                    and is_image_value(f.value)
                ),
                None,
            )
        return SignerEvidence(
            name=signer.name,
            email=signer.email,
            signed_at=signer.signed_at,
            ip_address=signer.ip_address,
            user_agent=signer.user_agent,
            signature_image=decode_image_data_url(image_source) if image_source else None,
        )


class FinalizationRunner:
    """Runs finalization jobs inline or on a small worker pool."""

    def __init__(self, *, background: bool = False, max_workers: int = 2) -> None:
        self.background = background
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="finalize") if background else None
        )

    def submit(self, job: Callable[[], object]) -> Future | None:
        if self._executor is None:
            job()
            return None
        future = self._executor.submit(job)
        future.add_done_callback(_log_job_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def _log_job_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None and not isinstance(exc, SigningError):
        logger.error("Background finalization crashed: %s", exc, exc_info=exc)
