import io
from datetime import datetime, timedelta

import pytest
from reportlab.pdfgen import canvas
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from modules.documents.models.user import User, UserRole
from modules.documents.services.document_service import DocumentService
from modules.signing.models.signing_request import SigningMode
from modules.signing.services.signing_request_service import SignerSpec, SigningRequestService
# Registers the remaining tables with Base
import create_tables  # noqa: F401

MAX_FILE_SIZE = 10 * 1024 * 1024

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2030, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def clean_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def upload_dir(tmp_path):
    return str(tmp_path / "uploads")


def create_dummy_user(session, id=1, role=UserRole.CO_OWNER, email=None, name=None):
    user = User(
        id=id,
        name=name or f"User {id}",
        email=email or f"user{id}@mail.com",
        password_hash="123",
        role=role,
        is_active=True,
        created_at=datetime.utcnow()
    )
    session.add(user)
    session.commit()
    return user


def create_dummy_pdf_bytes(text="PDF for tests"):
    buf = io.BytesIO()
    c = canvas.Canvas(buf)
    c.drawString(50, 750, text)
    c.save()
    buf.seek(0)
    return buf.read()


def upload_pdf_obj(session, user_id, upload_dir, filename="contract.pdf"):
    return DocumentService.upload_document(
        session, user_id, create_dummy_pdf_bytes(), filename, "application/pdf", upload_dir, MAX_FILE_SIZE
    )


def signer_specs(count, ordered=False):
    return [
        SignerSpec(name=f"Signer {i}", email=f"signer{i}@mail.com", order=i if ordered else None)
        for i in range(1, count + 1)
    ]


def sent_request(session, owner, document, count=2, mode=SigningMode.PARALLEL, due_date=None,
                 ttl=timedelta(days=7), now=NOW):
    """Creates and sends a request; returns (request, signers in order, {signer_id: token})."""
    request = SigningRequestService.create_signing_request(
        session, owner, document.current_version_id, mode, signer_specs(count),
        due_date=due_date, now=now
    )
    tokens = SigningRequestService.send_for_signing(session, owner, request.id, ttl, now)
    request = SigningRequestService.get_request(session, request.id)
    signers = sorted(request.signers, key=lambda s: s.order_position)
    return request, signers, tokens
