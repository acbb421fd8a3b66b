from typing import List, Optional

from fastapi import APIRouter, UploadFile, File, Form, HTTPException, Depends, Response
from sqlalchemy.orm import Session
from database import get_db
from modules.auth.controllers.auth_controller import get_current_user
from modules.auth.dependencies import require_permission
from modules.auth.permission import can_perform_action
from modules.documents.models.document import DocumentType
from modules.documents.models.schemas import (
    DocumentResponse, DocumentUploadResponse, DocumentVersionResponse
)
from modules.documents.models.user import User
from modules.documents.services.document_service import DocumentService, UPLOAD_DIR, MAX_FILE_SIZE

router = APIRouter(
    tags=["documents"]
)


def _ensure_can_read(user: User, document) -> None:
    if document.owner_id != user.id and not can_perform_action(user.role, "manage"):
        raise HTTPException(403, "You do not have access to this document")


@router.post("/upload", response_model=DocumentUploadResponse)
async def upload_document(
    file: UploadFile = File(...),
    document_type: DocumentType = Form(DocumentType.OTHER),
    description: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("upload"))
):
    contents = await file.read()
    doc = DocumentService.upload_document(
        db, current_user.id, contents, file.filename, file.content_type,
        UPLOAD_DIR, MAX_FILE_SIZE, document_type, description
    )
    return DocumentUploadResponse(
        document_id=doc.id,
        version_id=doc.current_version_id,
        file_name=doc.name,
        file_size=doc.current_version.file_size,
        uploaded_at=doc.created_at,
        message="Document uploaded successfully"
    )


@router.get("/", response_model=List[DocumentResponse])
def list_documents(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return DocumentService.get_documents_by_user(db, current_user)


@router.get("/{document_id}", response_model=DocumentResponse)
def get_document(document_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    doc = DocumentService.get_document(db, document_id)
    _ensure_can_read(current_user, doc)
    return doc


@router.get("/{document_id}/versions", response_model=List[DocumentVersionResponse])
def list_versions(document_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    doc = DocumentService.get_document(db, document_id)
    _ensure_can_read(current_user, doc)
    return doc.versions


@router.post("/{document_id}/new-version", response_model=DocumentUploadResponse)
async def upload_new_version(
    document_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("upload"))
):
    contents = await file.read()
    version = DocumentService.upload_new_version(
        db, document_id, current_user.id, contents, file.filename, file.content_type,
        UPLOAD_DIR, MAX_FILE_SIZE
    )
    return DocumentUploadResponse(
        document_id=document_id,
        version_id=version.id,
        file_name=version.file_name,
        file_size=version.file_size,
        uploaded_at=version.created_at,
        message=f"Version {version.version_number} uploaded"
    )


@router.get("/{document_id}/download")
def download_document(
    document_id: int,
    version_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Returns the PDF bytes once their hash matches the one recorded at upload.
    """
    doc = DocumentService.get_document(db, document_id)
    _ensure_can_read(current_user, doc)

    version = doc.current_version
    if version_id is not None:
        version = DocumentService.get_version(db, version_id)
        if not version or version.document_id != doc.id:
            raise HTTPException(404, "Version not found")

    data = DocumentService.read_version_content(version)
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"X-Document-Hash": version.sha256_hash}
    )
