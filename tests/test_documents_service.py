import hashlib
import os

import pytest
from fastapi import HTTPException

from conftest import MAX_FILE_SIZE, create_dummy_pdf_bytes, create_dummy_user, upload_pdf_obj
from modules.documents.models.document import Document, DocumentType
from modules.documents.models.user import UserRole
from modules.documents.services.document_service import DocumentService


def test_rejects_non_pdf(session, upload_dir):
    user = create_dummy_user(session)
    with pytest.raises(HTTPException) as exc:
        DocumentService.upload_document(
            session, user.id, b"Fake DOCX content", "notes.docx",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document", upload_dir, MAX_FILE_SIZE
        )
    assert exc.value.status_code == 400


def test_rejects_corrupted_pdf(session, upload_dir):
    user = create_dummy_user(session)
    with pytest.raises(HTTPException) as exc:
        DocumentService.upload_document(
            session, user.id, b"%PDF-1.4 garbage", "broken.pdf", "application/pdf", upload_dir, MAX_FILE_SIZE
        )
    assert exc.value.status_code == 400


def test_rejects_oversized_file(session, upload_dir):
    user = create_dummy_user(session)
    with pytest.raises(HTTPException):
        DocumentService.upload_document(
            session, user.id, create_dummy_pdf_bytes(), "big.pdf", "application/pdf", upload_dir, 10
        )


def test_upload_creates_first_version(session, upload_dir):
    user = create_dummy_user(session)
    doc = DocumentService.upload_document(
        session, user.id, create_dummy_pdf_bytes(), "lease.pdf", "application/pdf",
        upload_dir, MAX_FILE_SIZE, DocumentType.OWNERSHIP_AGREEMENT, "Unit 4B"
    )
    version = doc.current_version
    assert doc.owner_id == user.id
    assert doc.type == DocumentType.OWNERSHIP_AGREEMENT
    assert version.version_number == 1
    assert version.page_count == 1
    assert not version.is_finalized and not version.is_sealed
    with open(version.file_path, "rb") as f:
        assert hashlib.sha256(f.read()).hexdigest() == version.sha256_hash


def test_duplicate_names_get_a_suffix(session, upload_dir):
    user = create_dummy_user(session)
    names = [upload_pdf_obj(session, user.id, upload_dir, "minutes.pdf").name for _ in range(3)]
    assert names == ["minutes.pdf", "minutes_1.pdf", "minutes_2.pdf"]


def test_same_name_for_different_owners_is_fine(session, upload_dir):
    first = create_dummy_user(session, id=1)
    second = create_dummy_user(session, id=2)
    assert upload_pdf_obj(session, first.id, upload_dir, "bylaws.pdf").name == "bylaws.pdf"
    assert upload_pdf_obj(session, second.id, upload_dir, "bylaws.pdf").name == "bylaws.pdf"


def test_new_version_becomes_current(session, upload_dir):
    user = create_dummy_user(session)
    doc = upload_pdf_obj(session, user.id, upload_dir)
    first_version_id = doc.current_version_id

    version = DocumentService.upload_new_version(
        session, doc.id, user.id, create_dummy_pdf_bytes("v2"), "contract-v2.pdf", "application/pdf",
        upload_dir, MAX_FILE_SIZE
    )
    session.refresh(doc)
    assert version.version_number == 2
    assert doc.current_version_id == version.id
    assert [v.id for v in doc.versions] == [first_version_id, version.id]


def test_only_owner_adds_versions(session, upload_dir):
    owner = create_dummy_user(session, id=1)
    other = create_dummy_user(session, id=2)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    with pytest.raises(HTTPException) as exc:
        DocumentService.upload_new_version(
            session, doc.id, other.id, create_dummy_pdf_bytes(), "x.pdf", "application/pdf",
            upload_dir, MAX_FILE_SIZE
        )
    assert exc.value.status_code == 403


def test_seal_is_one_shot(session, upload_dir):
    user = create_dummy_user(session)
    doc = upload_pdf_obj(session, user.id, upload_dir)
    version = DocumentService.seal_version(session, doc.current_version_id)
    session.commit()
    assert version.is_sealed and version.is_finalized and version.sealed_at is not None
    with pytest.raises(ValueError):
        DocumentService.seal_version(session, doc.current_version_id)


def test_tampered_file_is_detected(session, upload_dir):
    user = create_dummy_user(session)
    doc = upload_pdf_obj(session, user.id, upload_dir)
    version = doc.current_version
    assert DocumentService.read_version_content(version).startswith(b"%PDF")

    with open(version.file_path, "ab") as f:
        f.write(b"TAMPERED")
    with pytest.raises(HTTPException) as exc:
        DocumentService.read_version_content(version)
    assert exc.value.status_code == 409


def test_listing_respects_roles(session, upload_dir):
    owner = create_dummy_user(session, id=1)
    other = create_dummy_user(session, id=2)
    staff = create_dummy_user(session, id=3, role=UserRole.STAFF)
    upload_pdf_obj(session, owner.id, upload_dir, "a.pdf")
    upload_pdf_obj(session, other.id, upload_dir, "b.pdf")

    assert [d.name for d in DocumentService.get_documents_by_user(session, owner)] == ["a.pdf"]
    assert len(DocumentService.get_documents_by_user(session, staff)) == 2
    assert session.query(Document).count() == 2
    assert all(os.path.dirname(d.current_version.file_path) == upload_dir
               for d in session.query(Document).all())
