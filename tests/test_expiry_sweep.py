from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from conftest import TestingSessionLocal, create_dummy_user, sent_request, upload_pdf_obj
from modules.signing.job import expiry_sweep
from modules.signing.models.signing_request import SigningRequest, SigningRequestStatus
from modules.signing.services.signing_request_service import SigningRequestService


def test_sweep_persists_expiry(session, upload_dir):
    owner = create_dummy_user(session)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    start = datetime.utcnow() - timedelta(hours=2)
    request, _, _ = sent_request(session, owner, doc, due_date=start + timedelta(hours=1), now=start)

    assert expiry_sweep.run_expiry_sweep(TestingSessionLocal) == 1
    session.expire_all()
    assert session.get(SigningRequest, request.id).status == SigningRequestStatus.EXPIRED


def test_sweep_survives_storage_errors(monkeypatch):
    def broken(session, now=None):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(SigningRequestService, "expire_overdue", staticmethod(broken))
    assert expiry_sweep.run_expiry_sweep(TestingSessionLocal) == 0
