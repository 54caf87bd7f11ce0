from __future__ import annotations

import base64
import io
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import Settings
from app.models import audit, document, signer, tenant  # noqa: F401
from app.models.document import Document, SigningMode
from app.services.events import EventBus
from app.services.finalization import FinalizationRunner
from app.services.storage import LocalStorage, STORAGE_ENV_VAR
from app.services.workflow import SigningWorkflow

pytestmark = pytest.mark.anyio

ENCRYPTION_KEY = "8f" * 32


class RecordingNotifier:
    def __init__(self) -> None:
        self.invites: list = []
        self.reminders: list = []
        self.codes: list = []

    def send_signing_invite(self, invite) -> None:
        self.invites.append(invite)

    def send_signing_reminder(self, reminder) -> None:
        self.reminders.append(reminder)

    def send_verification_code(self, message) -> None:
        self.codes.append(message)

    def invited_emails(self) -> list[str]:
        return [invite.signer_email for invite in self.invites]


@pytest.fixture()
def db_engine(tmp_path):
    db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def storage_env(monkeypatch, tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir(exist_ok=True)
    monkeypatch.setenv(STORAGE_ENV_VAR, str(storage_dir))
    yield storage_dir


@pytest.fixture()
def storage(storage_env) -> LocalStorage:
    return LocalStorage(base_dir=storage_env)


@pytest.fixture()
def test_settings(storage_env) -> Settings:
    return Settings(
        certificate_encryption_key=ENCRYPTION_KEY,
        signflow_storage=str(storage_env),
        finalize_in_background=False,
        public_app_url="https://sign.example.com",
    )


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def published(event_bus: EventBus) -> list[tuple[str, dict]]:
    received: list[tuple[str, dict]] = []
    event_bus.subscribe("*", lambda name, payload: received.append((name, payload)))
    return received


@pytest.fixture()
def workflow(db_session, storage, notifier, event_bus, test_settings) -> SigningWorkflow:
    return SigningWorkflow(
        db_session,
        storage=storage,
        notifier=notifier,
        events=event_bus,
        runner=FinalizationRunner(background=False),
        config=test_settings,
    )


@pytest.fixture()
def make_pdf():
    def _make_pdf(pages: int = 1, pagesize=A4) -> bytes:
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=pagesize)
        for number in range(1, pages + 1):
            pdf.drawString(72, pagesize[1] - 72, f"Contract page {number}")
            pdf.showPage()
        pdf.save()
        return buffer.getvalue()

    return _make_pdf


@pytest.fixture()
def png_data_url():
    def _png_data_url(width: int = 120, height: int = 40, fmt: str = "PNG") -> str:
        image = Image.new("RGB", (width, height), (20, 40, 160))
        buffer = io.BytesIO()
        image.save(buffer, format=fmt)
        mime = "image/png" if fmt == "PNG" else "image/jpeg"
        return f"data:{mime};base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"

    return _png_data_url


@pytest.fixture()
def make_pkcs12():
    def _make_pkcs12(
        passphrase: str = "s3cret",
        *,
        common_name: str = "Test Signer",
        issuer_name: str | None = None,
        expired: bool = False,
    ) -> bytes:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        now = datetime.now(timezone.utc)
        if expired:
            not_before, not_after = now - timedelta(days=30), now - timedelta(days=1)
        else:
            not_before, not_after = now - timedelta(days=1), now + timedelta(days=365)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=True,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .sign(key, hashes.SHA256())
        )
        return pkcs12.serialize_key_and_certificates(
            b"signflow-test",
            key,
            certificate,
            None,
            serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
        )

    return _make_pkcs12


@pytest.fixture()
def make_document(db_session: Session, workflow: SigningWorkflow, make_pdf):
    def _make_document(
        *,
        title: str = "Service Agreement",
        mode: SigningMode = SigningMode.PARALLEL,
        pages: int = 1,
        tenant_id: uuid.UUID | None = None,
        expires_at: datetime | None = None,
        language: str = "en",
    ) -> Document:
        document = Document(
            tenant_id=tenant_id or uuid.uuid4(),
            envelope_id=uuid.uuid4(),
            title=title,
            signing_mode=mode,
            signing_language=language,
            expires_at=expires_at,
        )
        db_session.add(document)
        db_session.commit()
        db_session.refresh(document)
        return workflow.register_original(document.id, make_pdf(pages))

    return _make_document
