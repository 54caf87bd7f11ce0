from __future__ import annotations

import base64
import io
import threading
from datetime import timedelta
from uuid import uuid4

import pytest
from pypdf import PdfReader
from sqlmodel import Session, select

from app.core.errors import IntegrityFailure, InvalidStateError, NotFoundError, ValidationError
from app.models.audit import AuditLog
from app.models.base import utcnow
from app.models.document import Document, DocumentStatus, FieldType, SignatureField, SigningMode
from app.models.signer import SignerAuthMethod, SignerStatus
from app.schemas.signing import AcceptSignaturePayload, FieldValue
from app.services.finalization import FinalizationRunner
from app.services.storage import LocalStorage
from app.services.workflow import SigningWorkflow
from app.utils.hashing import sha256_hex


def _payload(signature_data: str | None = None, **overrides) -> AcceptSignaturePayload:
    values = {
        "consent": True,
        "ip_address": "203.0.113.7",
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64) pytest",
        "signature_data": signature_data,
    }
    values.update(overrides)
    return AcceptSignaturePayload(**values)


def _add_signature_field(workflow: SigningWorkflow, document: Document, signer, *, y: float = 0.7) -> SignatureField:
    return workflow.add_field(
        document.id,
        signer.id,
        field_type=FieldType.SIGNATURE,
        page=1,
        x=0.1,
        y=y,
        width=0.3,
        height=0.08,
    )


@pytest.fixture()
def parallel_context(workflow: SigningWorkflow, make_document) -> dict:
    document = make_document()
    first = workflow.add_signer(document.id, "Ana Souza", "ana@example.com")
    second = workflow.add_signer(document.id, "Bruno Lima", "bruno@example.com")
    _add_signature_field(workflow, document, first, y=0.6)
    _add_signature_field(workflow, document, second, y=0.75)
    return {"document": document, "first": first, "second": second}


def _events(published: list, name: str) -> list[dict]:
    return [payload for event_name, payload in published if event_name == name]


def test_add_signer_issues_unique_high_entropy_tokens(workflow: SigningWorkflow, make_document) -> None:
    document = make_document()
    signers = [workflow.add_signer(document.id, f"Signer {i}", f"signer{i}@example.com") for i in range(5)]

    tokens = {signer.access_token for signer in signers}
    assert len(tokens) == 5
    assert all(len(token) == 64 for token in tokens)
    assert all(signer.status == SignerStatus.PENDING for signer in signers)


def test_add_signer_rejects_invalid_email(workflow: SigningWorkflow, make_document) -> None:
    document = make_document()
    with pytest.raises(ValidationError, match="Invalid signer email"):
        workflow.add_signer(document.id, "Nobody", "not-an-email")


def test_add_signer_unknown_document(workflow: SigningWorkflow) -> None:
    with pytest.raises(NotFoundError):
        workflow.add_signer(uuid4(), "Ana", "ana@example.com")


def test_are_all_signers_signed_false_without_signers(workflow: SigningWorkflow, make_document) -> None:
    document = make_document()
    assert workflow.are_all_signers_signed(document.id) is False


def test_parallel_flow_completes_once(
    db_session: Session,
    workflow: SigningWorkflow,
    parallel_context: dict,
    notifier,
    published,
    storage: LocalStorage,
    png_data_url,
) -> None:
    document = parallel_context["document"]
    first = parallel_context["first"]
    second = parallel_context["second"]

    workflow.send_document(document.id)
    assert sorted(notifier.invited_emails()) == ["ana@example.com", "bruno@example.com"]
    assert document.status == DocumentStatus.PENDING_SIGNATURES
    assert len(_events(published, "document.sent")) == 1
    assert _events(published, "document.sent")[0]["signingMode"] == "parallel"

    workflow.accept_signature(first.access_token, _payload(png_data_url()))
    db_session.refresh(document)
    assert document.status == DocumentStatus.PENDING_SIGNATURES
    assert workflow.are_all_signers_signed(document.id) is False

    workflow.accept_signature(second.access_token, _payload(png_data_url()))
    db_session.refresh(document)

    assert document.status == DocumentStatus.COMPLETED
    assert document.version == 2
    assert document.completed_at is not None
    completed = _events(published, "document.completed")
    assert len(completed) == 1
    assert completed[0]["documentId"] == str(document.id)
    assert len(_events(published, "signature.completed")) == 2

    final_bytes = storage.get(document.final_file_key)
    assert sha256_hex(final_bytes) == document.final_hash
    # one original page + one evidence page
    assert len(PdfReader(io.BytesIO(final_bytes)).pages) == 2


def test_signed_signers_carry_evidence(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, png_data_url
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    for key in ("first", "second"):
        workflow.accept_signature(parallel_context[key].access_token, _payload(png_data_url()))

    for key in ("first", "second"):
        signer = parallel_context[key]
        db_session.refresh(signer)
        assert signer.status == SignerStatus.SIGNED
        assert signer.signed_at is not None and signer.signed_at >= document.created_at
        assert signer.ip_address == "203.0.113.7"
        assert signer.user_agent

    fields = db_session.exec(select(SignatureField).where(SignatureField.document_id == document.id)).all()
    assert all(field.value and field.value.startswith("data:image/png") for field in fields)


def test_accept_twice_is_rejected_without_side_effects(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, published, png_data_url
) -> None:
    document = parallel_context["document"]
    first = parallel_context["first"]
    workflow.send_document(document.id)
    workflow.accept_signature(first.access_token, _payload(png_data_url()))
    db_session.refresh(first)
    signed_at = first.signed_at
    events_before = len(published)

    with pytest.raises(InvalidStateError, match="already signed"):
        workflow.accept_signature(first.access_token, _payload(png_data_url(), ip_address="198.51.100.1"))

    db_session.refresh(first)
    assert first.signed_at == signed_at
    assert first.ip_address == "203.0.113.7"
    assert len(published) == events_before


def test_sequential_flow_notifies_in_order(
    db_session: Session, workflow: SigningWorkflow, make_document, notifier, png_data_url
) -> None:
    document = make_document(mode=SigningMode.SEQUENTIAL)
    # created out of order on purpose
    third = workflow.add_signer(document.id, "Carla", "carla@example.com", order=5)
    first = workflow.add_signer(document.id, "Ana", "ana@example.com", order=1)
    second = workflow.add_signer(document.id, "Bruno", "bruno@example.com", order=3)
    for index, signer in enumerate((third, first, second)):
        _add_signature_field(workflow, document, signer, y=0.1 + index * 0.2)

    workflow.send_document(document.id)
    assert notifier.invited_emails() == ["ana@example.com"]

    workflow.accept_signature(first.access_token, _payload(png_data_url()))
    assert notifier.invited_emails() == ["ana@example.com", "bruno@example.com"]

    workflow.accept_signature(second.access_token, _payload(png_data_url()))
    assert notifier.invited_emails() == ["ana@example.com", "bruno@example.com", "carla@example.com"]

    workflow.accept_signature(third.access_token, _payload(png_data_url()))
    db_session.refresh(document)
    assert document.status == DocumentStatus.COMPLETED


def test_sequential_rejects_out_of_turn_signer(
    workflow: SigningWorkflow, make_document, published, png_data_url
) -> None:
    document = make_document(mode=SigningMode.SEQUENTIAL)
    first = workflow.add_signer(document.id, "Ana", "ana@example.com", order=1)
    second = workflow.add_signer(document.id, "Bruno", "bruno@example.com", order=2)
    _add_signature_field(workflow, document, first, y=0.2)
    _add_signature_field(workflow, document, second, y=0.5)
    workflow.send_document(document.id)

    with pytest.raises(InvalidStateError, match="turn"):
        workflow.accept_signature(second.access_token, _payload(png_data_url()))
    assert _events(published, "signature.completed") == []


@pytest.mark.parametrize(
    ("orders", "message"),
    [
        ((1, None), "must have an order"),
        ((2, 2), "must be unique"),
    ],
)
def test_sequential_send_validates_orders(
    workflow: SigningWorkflow, make_document, orders, message
) -> None:
    document = make_document(mode=SigningMode.SEQUENTIAL)
    for index, order in enumerate(orders):
        signer = workflow.add_signer(document.id, f"Signer {index}", f"s{index}@example.com", order=order)
        _add_signature_field(workflow, document, signer, y=0.1 + index * 0.3)

    with pytest.raises(InvalidStateError, match=message):
        workflow.send_document(document.id)


def test_sequential_orders_need_not_be_contiguous(workflow: SigningWorkflow, make_document, notifier) -> None:
    document = make_document(mode=SigningMode.SEQUENTIAL)
    for index, order in enumerate((10, 40)):
        signer = workflow.add_signer(document.id, f"Signer {index}", f"s{index}@example.com", order=order)
        _add_signature_field(workflow, document, signer, y=0.1 + index * 0.3)

    workflow.send_document(document.id)
    assert notifier.invited_emails() == ["s0@example.com"]


def test_send_requires_signers_and_required_fields(workflow: SigningWorkflow, make_document) -> None:
    document = make_document()
    with pytest.raises(InvalidStateError, match="At least one signer"):
        workflow.send_document(document.id)

    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")
    with pytest.raises(InvalidStateError, match="required field"):
        workflow.send_document(document.id)

    workflow.add_field(
        document.id, signer.id, field_type=FieldType.TEXT, page=1, x=0.1, y=0.1, width=0.2, height=0.05, required=False
    )
    with pytest.raises(InvalidStateError, match="required field"):
        workflow.send_document(document.id)


def test_send_rejects_expired_and_completed_documents(
    db_session: Session, workflow: SigningWorkflow, make_document
) -> None:
    expired = make_document(expires_at=utcnow() - timedelta(minutes=1))
    signer = workflow.add_signer(expired.id, "Ana", "ana@example.com")
    _add_signature_field(workflow, expired, signer)
    with pytest.raises(InvalidStateError, match="expired"):
        workflow.send_document(expired.id)

    completed = make_document()
    completed.status = DocumentStatus.COMPLETED
    db_session.add(completed)
    db_session.commit()
    with pytest.raises(InvalidStateError, match="completed"):
        workflow.send_document(completed.id)


def test_add_field_rejects_nonexistent_page(workflow: SigningWorkflow, make_document) -> None:
    document = make_document(pages=2)
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")

    with pytest.raises(ValidationError, match="Page 3 does not exist"):
        workflow.add_field(
            document.id, signer.id, field_type=FieldType.SIGNATURE, page=3, x=0.1, y=0.1, width=0.2, height=0.1
        )
    field = workflow.add_field(
        document.id, signer.id, field_type=FieldType.SIGNATURE, page=2, x=0.1, y=0.1, width=0.2, height=0.1
    )
    assert field.page == 2


def test_accept_with_unknown_token_is_generic(workflow: SigningWorkflow) -> None:
    with pytest.raises(NotFoundError, match="^Signer not found$"):
        workflow.accept_signature("f" * 64, _payload())
    with pytest.raises(NotFoundError, match="^Signer not found$"):
        workflow.find_signer_by_token("")


def test_accept_rejects_expired_document(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, png_data_url
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    document.expires_at = utcnow() - timedelta(seconds=1)
    db_session.add(document)
    db_session.commit()

    with pytest.raises(InvalidStateError, match="expired"):
        workflow.accept_signature(parallel_context["first"].access_token, _payload(png_data_url()))


def test_accept_before_send_is_rejected(workflow: SigningWorkflow, parallel_context: dict, png_data_url) -> None:
    with pytest.raises(InvalidStateError, match="not been sent"):
        workflow.accept_signature(parallel_context["first"].access_token, _payload(png_data_url()))


def test_accept_requires_consent_and_required_values(
    workflow: SigningWorkflow, parallel_context: dict, png_data_url
) -> None:
    workflow.send_document(parallel_context["document"].id)
    token = parallel_context["first"].access_token

    with pytest.raises(ValidationError, match="Consent"):
        workflow.accept_signature(token, _payload(png_data_url(), consent=False))
    with pytest.raises(ValidationError, match="Required fields are missing"):
        workflow.accept_signature(token, _payload(None))


def test_accept_rejects_fields_of_other_signers(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, png_data_url
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    foreign = db_session.exec(
        select(SignatureField).where(SignatureField.signer_id == parallel_context["second"].id)
    ).one()

    payload = _payload(png_data_url(), field_values=[FieldValue(field_id=foreign.id, value="hijack")])
    with pytest.raises(NotFoundError):
        workflow.accept_signature(parallel_context["first"].access_token, payload)


def test_accept_stores_text_field_values(
    db_session: Session, workflow: SigningWorkflow, make_document, png_data_url
) -> None:
    document = make_document()
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")
    _add_signature_field(workflow, document, signer)
    name_field = workflow.add_field(
        document.id, signer.id, field_type=FieldType.NAME, page=1, x=0.5, y=0.1, width=0.3, height=0.05
    )
    workflow.send_document(document.id)

    workflow.accept_signature(
        signer.access_token,
        _payload(png_data_url(), field_values=[FieldValue(field_id=name_field.id, value="  Ana Souza ")]),
    )
    db_session.refresh(name_field)
    assert name_field.value == "Ana Souza"


def test_email_verification_required_before_signing(
    db_session: Session, workflow: SigningWorkflow, make_document, notifier, png_data_url
) -> None:
    document = make_document()
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com", auth_method=SignerAuthMethod.EMAIL)
    _add_signature_field(workflow, document, signer)
    workflow.send_document(document.id)

    with pytest.raises(InvalidStateError, match="Verification required"):
        workflow.accept_signature(signer.access_token, _payload(png_data_url()))

    with pytest.raises(ValidationError, match="No verification code was sent"):
        workflow.verify_code(signer.access_token, "000000")

    workflow.send_verification_code(signer.access_token)
    code = notifier.codes[-1].code
    wrong = "000000" if code != "000000" else "111111"
    with pytest.raises(ValidationError, match="Invalid verification code"):
        workflow.verify_code(signer.access_token, wrong)
    db_session.refresh(signer)
    assert signer.verification_attempts == 1
    assert signer.verification_code_hash != code

    workflow.verify_code(signer.access_token, code)
    db_session.refresh(signer)
    assert signer.verified_at is not None

    workflow.accept_signature(signer.access_token, _payload(png_data_url()))
    db_session.refresh(document)
    assert document.status == DocumentStatus.COMPLETED


def test_verification_code_limits(db_session: Session, workflow: SigningWorkflow, make_document, notifier) -> None:
    document = make_document()
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com", auth_method=SignerAuthMethod.EMAIL)

    workflow.send_verification_code(signer.access_token)
    signer.verification_attempts = 5
    db_session.add(signer)
    db_session.commit()
    with pytest.raises(InvalidStateError, match="Maximum verification attempts"):
        workflow.verify_code(signer.access_token, notifier.codes[-1].code)

    workflow.send_verification_code(signer.access_token)
    signer.verification_expires_at = utcnow() - timedelta(seconds=1)
    db_session.add(signer)
    db_session.commit()
    with pytest.raises(ValidationError, match="expired"):
        workflow.verify_code(signer.access_token, notifier.codes[-1].code)


def test_signing_context_marks_first_view(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, published
) -> None:
    workflow.send_document(parallel_context["document"].id)
    token = parallel_context["first"].access_token

    context = workflow.get_signing_context(token)
    assert context.signer.email == "ana@example.com"
    assert len(context.fields) == 1
    assert context.is_turn is True
    assert "access_token" not in context.signer.model_dump()

    workflow.get_signing_context(token)
    assert len(_events(published, "signer.viewed")) == 1


def test_claim_finalization_is_exclusive(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)

    claim = workflow.claim_finalization(document.id)
    assert claim is not None
    assert workflow.claim_finalization(document.id) is None


def test_claim_finalization_single_winner_across_threads(
    db_engine, db_session: Session, workflow: SigningWorkflow, parallel_context: dict, test_settings
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)

    results: list[str | None] = []
    barrier = threading.Barrier(6)
    lock = threading.Lock()

    def contender() -> None:
        with Session(db_engine) as session:
            contender_workflow = SigningWorkflow(session, storage=workflow.storage, config=test_settings)
            barrier.wait()
            claim = contender_workflow.claim_finalization(document.id)
            with lock:
                results.append(claim)

    threads = [threading.Thread(target=contender) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 6
    assert len([claim for claim in results if claim]) == 1


def test_finalize_document_is_idempotent(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, published, png_data_url
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    for key in ("first", "second"):
        workflow.accept_signature(parallel_context[key].access_token, _payload(png_data_url()))

    assert workflow.finalize_document(document.id) is None
    assert len(_events(published, "document.completed")) == 1


def test_finalize_requires_all_signatures(workflow: SigningWorkflow, parallel_context: dict, png_data_url) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    workflow.accept_signature(parallel_context["first"].access_token, _payload(png_data_url()))

    with pytest.raises(InvalidStateError, match="Not all signers"):
        workflow.finalize_document(document.id)


class FailingFinalStorage(LocalStorage):
    failures = 1

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        if key.endswith("final.pdf") and self.failures:
            self.failures -= 1
            raise OSError("disk unavailable")
        return super().put(key, data, content_type)


def test_storage_failure_keeps_document_pending_and_retry_succeeds(
    db_session: Session, storage_env, notifier, event_bus, published, test_settings, make_pdf, png_data_url
) -> None:
    storage = FailingFinalStorage(base_dir=storage_env)
    workflow = SigningWorkflow(
        db_session,
        storage=storage,
        notifier=notifier,
        events=event_bus,
        runner=FinalizationRunner(background=False),
        config=test_settings,
    )
    document = Document(tenant_id=uuid4(), title="Lease")
    db_session.add(document)
    db_session.commit()
    workflow.register_original(document.id, make_pdf())
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")
    _add_signature_field(workflow, document, signer)
    workflow.send_document(document.id)

    workflow.accept_signature(signer.access_token, _payload(png_data_url()))
    db_session.refresh(document)
    assert document.status == DocumentStatus.PENDING_SIGNATURES
    assert document.finalization_claim is None
    failures = _events(published, "document.finalization_failed")
    assert len(failures) == 1 and failures[0]["retryable"] is True

    completed = workflow.finalize_document(document.id)
    assert completed is not None
    assert completed.status == DocumentStatus.COMPLETED
    assert len(_events(published, "document.completed")) == 1


def test_background_runner_finalizes_off_request_path(
    db_engine, db_session: Session, storage, notifier, event_bus, test_settings, make_pdf, png_data_url
) -> None:
    runner = FinalizationRunner(background=True, max_workers=1)
    workflow = SigningWorkflow(
        db_session, storage=storage, notifier=notifier, events=event_bus, runner=runner, config=test_settings
    )
    document = Document(tenant_id=uuid4(), title="NDA")
    db_session.add(document)
    db_session.commit()
    workflow.register_original(document.id, make_pdf())
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")
    _add_signature_field(workflow, document, signer)
    workflow.send_document(document.id)

    workflow.accept_signature(signer.access_token, _payload(png_data_url()))
    runner.shutdown(wait=True)

    with Session(db_engine) as session:
        stored = session.get(Document, document.id)
        assert stored.status == DocumentStatus.COMPLETED
        assert stored.final_hash


def test_audit_summary_lists_timeline(workflow: SigningWorkflow, parallel_context: dict, png_data_url) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    workflow.accept_signature(parallel_context["first"].access_token, _payload(png_data_url()))

    summary = workflow.get_audit_summary(document.id)
    assert summary.signers_total == 2
    assert summary.signers_signed == 1
    descriptions = [entry.description for entry in summary.timeline]
    assert "Document sent for signature" in descriptions
    assert "Signed by Ana Souza" in descriptions


def test_signature_events_are_persisted(db_session: Session, workflow: SigningWorkflow, parallel_context: dict, png_data_url) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    workflow.accept_signature(parallel_context["first"].access_token, _payload(png_data_url()))

    logs = db_session.exec(
        select(AuditLog).where(AuditLog.document_id == document.id, AuditLog.event_type == "signature.completed")
    ).all()
    assert len(logs) == 1
    assert logs[0].ip_address == "203.0.113.7"
    assert logs[0].details["signerId"] == str(parallel_context["first"].id)


def _truncated_png_data_url(png_data_url) -> str:
    full = base64.b64decode(png_data_url(240, 80).split(",", 1)[1])
    # signature, IHDR and the start of IDAT survive; the pixel stream is cut short
    return "data:image/png;base64," + base64.b64encode(full[:60]).decode("ascii")


@pytest.mark.parametrize(
    "broken",
    [
        "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"garbage" * 10).decode("ascii"),
        "truncated",
    ],
)
def test_accept_rejects_undecodable_signature_image(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, published, png_data_url, broken
) -> None:
    document = parallel_context["document"]
    first = parallel_context["first"]
    workflow.send_document(document.id)
    signature_data = _truncated_png_data_url(png_data_url) if broken == "truncated" else broken

    with pytest.raises(ValidationError, match="PNG or JPEG"):
        workflow.accept_signature(first.access_token, _payload(signature_data))
    with pytest.raises(ValidationError, match="Field image"):
        workflow.accept_signature(
            first.access_token,
            _payload(
                png_data_url(),
                field_values=[FieldValue(field_id=workflow._list_fields(document.id, first.id)[0].id, value=signature_data)],
            ),
        )

    db_session.refresh(first)
    assert first.status == SignerStatus.PENDING
    assert _events(published, "signature.completed") == []


def test_corrupt_stored_image_records_failure_instead_of_raising(
    db_session: Session, workflow: SigningWorkflow, parallel_context: dict, published, png_data_url
) -> None:
    document = parallel_context["document"]
    first = parallel_context["first"]
    second = parallel_context["second"]
    workflow.send_document(document.id)
    workflow.accept_signature(first.access_token, _payload(png_data_url()))

    # a stored value whose pixel data no longer decodes
    field = workflow._list_fields(document.id, first.id)[0]
    field.value = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"garbage" * 10).decode("ascii")
    db_session.add(field)
    db_session.commit()

    signer = workflow.accept_signature(second.access_token, _payload(png_data_url()))
    db_session.refresh(document)

    assert signer.status == SignerStatus.SIGNED
    assert document.status == DocumentStatus.PENDING_SIGNATURES
    assert document.finalization_claim is None
    failures = _events(published, "document.finalization_failed")
    assert len(failures) == 1
    assert failures[0]["retryable"] is False
    assert "Failed to render final document" in failures[0]["error"]

    with pytest.raises(IntegrityFailure, match="Failed to render final document"):
        workflow.finalize_document(document.id)


def test_late_signer_in_sent_sequential_document_keeps_turn_order(
    workflow: SigningWorkflow, make_document, png_data_url
) -> None:
    document = make_document(mode=SigningMode.SEQUENTIAL)
    first = workflow.add_signer(document.id, "Ana", "ana@example.com", order=1)
    second = workflow.add_signer(document.id, "Bruno", "bruno@example.com", order=2)
    _add_signature_field(workflow, document, first, y=0.2)
    _add_signature_field(workflow, document, second, y=0.5)
    workflow.send_document(document.id)

    with pytest.raises(InvalidStateError, match="must have an order"):
        workflow.add_signer(document.id, "Carla", "carla@example.com")
    with pytest.raises(InvalidStateError, match="must be unique"):
        workflow.add_signer(document.id, "Dani", "dani@example.com", order=1)

    late = workflow.add_signer(document.id, "Eva", "eva@example.com", order=3)
    with pytest.raises(InvalidStateError, match="turn"):
        workflow.accept_signature(late.access_token, _payload(png_data_url()))
    assert workflow.get_signing_context(late.access_token).is_turn is False

    workflow.accept_signature(first.access_token, _payload(png_data_url()))
    workflow.accept_signature(second.access_token, _payload(png_data_url()))
    assert workflow.accept_signature(late.access_token, _payload(png_data_url())).status == SignerStatus.SIGNED


def test_timestamps_round_trip_as_naive_utc(db_session: Session, workflow: SigningWorkflow, make_document) -> None:
    document = make_document()
    signer = workflow.add_signer(document.id, "Ana", "ana@example.com")

    db_session.expire_all()
    stored = db_session.get(Document, document.id)
    assert stored.created_at.tzinfo is None
    assert stored.created_at <= utcnow()
    assert db_session.get(type(signer), signer.id).created_at.tzinfo is None


def test_list_audit_events_is_tenant_scoped_and_paginated(
    workflow: SigningWorkflow, parallel_context: dict, make_document
) -> None:
    document = parallel_context["document"]
    workflow.send_document(document.id)
    make_document(title="Other tenant")

    events, total = workflow.list_audit_events(document.tenant_id, page_size=2)
    assert total == 3  # two signer.added plus document.sent
    assert len(events) == 2
    assert events[0].event_type == "document.sent"
    assert all(event.tenant_id == document.tenant_id for event in events)

    sent, sent_total = workflow.list_audit_events(document.tenant_id, event_type="signer.added")
    assert sent_total == 2
    assert {event.details["email"] for event in sent} == {"ana@example.com", "bruno@example.com"}
