import hashlib
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import NOW, create_dummy_user, sent_request, upload_pdf_obj
from modules.signing.models.signature_event import LedgerImmutableError, SignatureEvent
from modules.signing.services.errors import ValidationError
from modules.signing.services.signature_ledger import MAX_EVIDENCE_BYTES, SignatureLedger


@pytest.fixture
def signing(session, upload_dir):
    owner = create_dummy_user(session)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    request, signers, _ = sent_request(session, owner, doc, count=2)
    return request, signers, doc.current_version.sha256_hash


def test_append_numbers_events_and_hashes_evidence(session, signing):
    request, signers, doc_hash = signing
    ledger = SignatureLedger(session)
    first = ledger.append(request, signers[0], b"ink-1", doc_hash, device_info="tablet", now=NOW)
    second = ledger.append(request, signers[1], b"ink-2", doc_hash, now=NOW + timedelta(minutes=1))
    session.commit()

    assert (first.sequence, second.sequence) == (1, 2)
    assert first.evidence_sha256 == hashlib.sha256(b"ink-1").hexdigest()
    assert first.document_sha256 == doc_hash
    assert request.ledger_head == 2
    assert [e.signer_id for e in ledger.events_for(request.id)] == [signers[0].id, signers[1].id]


def test_events_cannot_be_modified(session, signing):
    request, signers, doc_hash = signing
    sig_event = SignatureLedger(session).append(request, signers[0], b"ink", doc_hash, now=NOW)
    session.commit()

    sig_event.device_info = "forged"
    with pytest.raises(LedgerImmutableError):
        session.commit()
    session.rollback()


def test_events_cannot_be_deleted(session, signing):
    request, signers, doc_hash = signing
    sig_event = SignatureLedger(session).append(request, signers[0], b"ink", doc_hash, now=NOW)
    session.commit()

    session.delete(sig_event)
    with pytest.raises(LedgerImmutableError):
        session.commit()
    session.rollback()
    assert session.query(SignatureEvent).count() == 1


def test_one_event_per_signer(session, signing):
    request, signers, doc_hash = signing
    session.add(SignatureEvent(
        signing_request_id=request.id, signer_id=signers[0].id, sequence=1,
        evidence=b"a", evidence_sha256="x", document_sha256=doc_hash, created_at=NOW
    ))
    session.add(SignatureEvent(
        signing_request_id=request.id, signer_id=signers[0].id, sequence=2,
        evidence=b"b", evidence_sha256="y", document_sha256=doc_hash, created_at=NOW
    ))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


@pytest.mark.parametrize("evidence,device_info", [
    (b"", None),
    (b"x" * (MAX_EVIDENCE_BYTES + 1), None),
    (b"ink", "d" * 513),
])
def test_invalid_evidence_is_rejected(evidence, device_info):
    with pytest.raises(ValidationError):
        SignatureLedger.validate_evidence(evidence, device_info)


def test_signer_from_another_request_is_rejected(session, upload_dir, signing):
    request, _, doc_hash = signing
    owner = create_dummy_user(session, id=2)
    other_doc = upload_pdf_obj(session, owner.id, upload_dir, "other.pdf")
    _, other_signers, _ = sent_request(session, owner, other_doc, count=1)

    with pytest.raises(ValidationError):
        SignatureLedger(session).append(request, other_signers[0], b"ink", doc_hash, now=NOW)


def test_audit_trail_is_chronological(session, signing):
    request, signers, doc_hash = signing
    SignatureLedger(session).append(
        request, signers[0], b"ink", doc_hash, device_info="phone", ip_address="10.0.0.1",
        now=NOW + timedelta(hours=1)
    )
    session.commit()

    trail = SignatureLedger(session).audit_trail(request)
    assert [e["action"] for e in trail] == ["CREATED", "SENT_FOR_SIGNING", "SIGNED"]
    assert trail[2]["actor"] == signers[0].name
    assert "phone" in trail[2]["details"]
    assert "10.0.0.1" in trail[2]["details"]
