import hashlib
import io
import logging
import os
import uuid
from datetime import datetime
from typing import Optional

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError
from fastapi import HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session
from modules.documents.models.document import Document, DocumentType, DocumentVersion
from modules.documents.models.user import User, UserRole

logger = logging.getLogger(__name__)

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_MB", "10")) * 1024 * 1024


class DocumentService:
    """
    Document Store: owns uploaded files and their versions.
    The signing engine only talks to it through get_version,
    finalize_version and seal_version.
    """

    @staticmethod
    def get_documents_by_user(session: Session, user: User) -> list[Document]:
        if user.role in [UserRole.GROUP_ADMIN, UserRole.STAFF]:
            return session.query(Document).order_by(Document.id).all()
        return session.query(Document).filter(Document.owner_id == user.id).order_by(Document.id).all()

    @staticmethod
    def get_document(session: Session, document_id: int) -> Document:
        document = session.get(Document, document_id)
        if not document:
            raise HTTPException(404, "Document not found")
        return document

    @staticmethod
    def get_version(session: Session, version_id: int) -> Optional[DocumentVersion]:
        return session.get(DocumentVersion, version_id)

    @staticmethod
    def finalize_version(session: Session, version_id: int) -> DocumentVersion:
        """Freezes a version so it can be routed for signatures. Does not commit."""
        version = session.get(DocumentVersion, version_id)
        if not version.is_finalized:
            version.is_finalized = True
            logger.info("Document version %s finalized", version_id)
        return version

    @staticmethod
    def seal_version(session: Session, version_id: int, sealed_at: Optional[datetime] = None) -> DocumentVersion:
        """
        Marks a fully executed version as read-only.
        Runs inside the caller's transaction; the caller commits.
        """
        version = session.get(DocumentVersion, version_id)
        if version.is_sealed:
            raise ValueError(f"Document version {version_id} is already sealed")
        version.is_sealed = True
        version.is_finalized = True
        version.sealed_at = sealed_at or datetime.utcnow()
        logger.info("Document version %s sealed", version_id)
        return version

    @staticmethod
    def upload_document(
        session: Session,
        user_id: int,
        file_contents: bytes,
        filename: str,
        content_type: str,
        upload_dir: str = UPLOAD_DIR,
        max_file_size: int = MAX_FILE_SIZE,
        document_type: DocumentType = DocumentType.OTHER,
        description: Optional[str] = None
    ) -> Document:
        """
        Validates and stores a new document:
        - checks the file is a sane PDF
        - picks a unique display name for the owner
        - writes version 1 to disk and records it
        """
        page_count, author = DocumentService._validate_file(file_contents, filename, content_type, max_file_size)

        unique_name = DocumentService._get_unique_filename(session, user_id, filename)

        document = Document(
            name=unique_name,
            type=document_type,
            description=description,
            owner_id=user_id,
            created_at=datetime.utcnow()
        )
        session.add(document)
        session.flush()

        version = DocumentService._store_version(
            session, document, user_id, file_contents, filename, upload_dir, page_count, author
        )
        document.current_version = version
        session.commit()

        logger.info("Document %s uploaded by user %s (%s bytes)", document.id, user_id, len(file_contents))
        return document

    @staticmethod
    def upload_new_version(
        session: Session,
        document_id: int,
        user_id: int,
        file_contents: bytes,
        filename: str,
        content_type: str,
        upload_dir: str = UPLOAD_DIR,
        max_file_size: int = MAX_FILE_SIZE
    ) -> DocumentVersion:
        """Adds a version and makes it current. Earlier versions, sealed or not, stay untouched."""
        document = DocumentService.get_document(session, document_id)
        if document.owner_id != user_id:
            raise HTTPException(403, "Only the document owner can upload new versions")

        page_count, author = DocumentService._validate_file(file_contents, filename, content_type, max_file_size)
        version = DocumentService._store_version(
            session, document, user_id, file_contents, filename, upload_dir, page_count, author
        )
        document.current_version = version
        session.commit()

        logger.info("Document %s now at version %s", document.id, version.version_number)
        return version

    @staticmethod
    def read_version_content(version: DocumentVersion) -> bytes:
        """Returns the stored bytes after checking them against the recorded hash"""
        with open(version.file_path, "rb") as f:
            data = f.read()
        if hashlib.sha256(data).hexdigest() != version.sha256_hash:
            logger.error("Integrity check failed for document version %s", version.id)
            raise HTTPException(409, "Integrity compromised: hash does not match")
        return data

    @staticmethod
    def _store_version(
        session: Session,
        document: Document,
        user_id: int,
        file_contents: bytes,
        filename: str,
        upload_dir: str,
        page_count: Optional[int],
        author: Optional[str]
    ) -> DocumentVersion:
        next_number = (max([v.version_number for v in document.versions]) + 1) if document.versions else 1

        os.makedirs(upload_dir, exist_ok=True)
        _, ext = os.path.splitext(filename)
        file_path = os.path.join(upload_dir, f"{uuid.uuid4().hex}{ext.lower()}")
        with open(file_path, "wb") as f:
            f.write(file_contents)

        version = DocumentVersion(
            document=document,
            version_number=next_number,
            file_name=filename,
            file_path=file_path,
            file_size=len(file_contents),
            sha256_hash=hashlib.sha256(file_contents).hexdigest(),
            page_count=page_count,
            author=author,
            created_by_id=user_id,
            created_at=datetime.utcnow()
        )
        session.add(version)
        session.flush()
        return version

    @staticmethod
    def _validate_file(file_contents: bytes, filename: str, content_type: str, max_file_size: int):
        """Validates the upload and returns (page_count, author) read from the PDF"""

        if content_type != "application/pdf":
            raise HTTPException(400, "The file must be a PDF")

        if not filename.lower().endswith(".pdf"):
            raise HTTPException(400, "The extension must be .pdf")

        if not file_contents:
            raise HTTPException(400, "The file is empty")

        if len(file_contents) > max_file_size:
            raise HTTPException(400, f"The maximum size is {max_file_size // (1024*1024)} MB")

        try:
            reader = PdfReader(io.BytesIO(file_contents))
            page_count = len(reader.pages)
            metadata = reader.metadata
        except (PdfReadError, ValueError, KeyError, TypeError):
            raise HTTPException(400, "Invalid or corrupted PDF")

        author = metadata.author if metadata else None
        return page_count, author

    @staticmethod
    def _get_unique_filename(session: Session, user_id: int, original_name: str) -> str:
        """Picks the display name for a new document, adding _n on clashes"""

        base, ext = os.path.splitext(original_name)

        existing_names = (
            session.query(Document.name)
            .filter(
                Document.owner_id == user_id,
                or_(
                    Document.name == original_name,
                    Document.name.ilike(f"{base}_%{ext}")
                )
            )
            .all()
        )
        existing = [row[0] for row in existing_names]

        if not existing:
            return original_name

        used_numbers = set()

        for existing_name in existing:
            if existing_name == original_name:
                used_numbers.add(0)
            elif existing_name.startswith(f"{base}_") and existing_name.endswith(ext):
                start_idx = len(base) + 1
                end_idx = len(existing_name) - len(ext) if ext else len(existing_name)
                if end_idx > start_idx:
                    try:
                        used_numbers.add(int(existing_name[start_idx:end_idx]))
                    except ValueError:
                        continue

        next_num = 1
        while next_num in used_numbers:
            next_num += 1

        return f"{base}_{next_num}{ext}"
