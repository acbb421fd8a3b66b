import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import NOW, create_dummy_user, sent_request, upload_pdf_obj
from database import Base
from modules.signing.models.signature_event import SignatureEvent
from modules.signing.services.errors import RequestClosed, TokenConsumed
from modules.signing.services.request_locks import request_locks
from modules.signing.services.signing_request_service import SigningRequestService


@pytest.fixture
def file_sessions(tmp_path):
    # Threads need a real file; the shared in-memory connection is not safe for them
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(bind=file_engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    yield factory
    file_engine.dispose()


def submit_in_own_session(factory, document_id, token, barrier):
    with factory() as session:
        barrier.wait()
        try:
            SigningRequestService.submit_signature(session, document_id, token, b"ink", now=NOW)
            return "ok"
        except (TokenConsumed, RequestClosed) as e:
            return e.code


def test_same_token_signs_exactly_once(file_sessions, upload_dir):
    with file_sessions() as session:
        owner = create_dummy_user(session)
        document = upload_pdf_obj(session, owner.id, upload_dir)
        request, signers, tokens = sent_request(session, owner, document, count=1)
        document_id, request_id, token = document.id, request.id, tokens[signers[0].id]

    workers = 8
    barrier = threading.Barrier(workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [
            pool.submit(submit_in_own_session, file_sessions, document_id, token, barrier)
            for _ in range(workers)
        ]
        outcomes = [f.result(timeout=60) for f in futures]

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} <= {"TokenConsumed", "RequestClosed"}
    with file_sessions() as session:
        assert session.query(SignatureEvent).filter_by(signing_request_id=request_id).count() == 1


def test_parallel_signers_race_without_losing_signatures(file_sessions, upload_dir):
    with file_sessions() as session:
        owner = create_dummy_user(session)
        document = upload_pdf_obj(session, owner.id, upload_dir)
        request, signers, tokens = sent_request(session, owner, document, count=5)
        document_id, request_id = document.id, request.id
        raw_tokens = [tokens[s.id] for s in signers]

    barrier = threading.Barrier(len(raw_tokens))
    with ThreadPoolExecutor(max_workers=len(raw_tokens)) as pool:
        futures = [
            pool.submit(submit_in_own_session, file_sessions, document_id, token, barrier)
            for token in raw_tokens
        ]
        outcomes = [f.result(timeout=60) for f in futures]

    assert outcomes == ["ok"] * len(raw_tokens)
    with file_sessions() as session:
        sequences = sorted(
            e.sequence for e in session.query(SignatureEvent).filter_by(signing_request_id=request_id)
        )
        assert sequences == [1, 2, 3, 4, 5]
        status = SigningRequestService.get_signature_status(session, document_id, now=NOW)
        assert status["is_complete"]


def test_other_requests_are_not_blocked(file_sessions, upload_dir):
    with file_sessions() as session:
        owner = create_dummy_user(session)
        busy_doc = upload_pdf_obj(session, owner.id, upload_dir, "busy.pdf")
        free_doc = upload_pdf_obj(session, owner.id, upload_dir, "free.pdf")
        busy, _, _ = sent_request(session, owner, busy_doc, count=1)
        _, free_signers, free_tokens = sent_request(session, owner, free_doc, count=1)
        busy_id, free_doc_id = busy.id, free_doc.id
        free_token = free_tokens[free_signers[0].id]

    def sign_free():
        with file_sessions() as session:
            return SigningRequestService.submit_signature(session, free_doc_id, free_token, b"ink", now=NOW)

    with request_locks.hold(("request", busy_id)):
        with ThreadPoolExecutor(max_workers=1) as pool:
            result = pool.submit(sign_free).result(timeout=10)
    assert result.is_complete
