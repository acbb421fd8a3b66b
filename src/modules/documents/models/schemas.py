from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from modules.documents.models.document import DocumentType


class DocumentVersionResponse(BaseModel):
    id: int
    version_number: int
    file_name: str
    file_size: int
    sha256_hash: str
    page_count: Optional[int] = None
    author: Optional[str] = None
    is_finalized: bool
    is_sealed: bool
    sealed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DocumentResponse(BaseModel):
    id: int
    name: str
    type: DocumentType
    description: Optional[str] = None
    owner_id: int
    created_at: datetime
    current_version: Optional[DocumentVersionResponse] = None

    model_config = {"from_attributes": True}


class DocumentUploadResponse(BaseModel):
    document_id: int
    version_id: int
    file_name: str
    file_size: int
    uploaded_at: datetime
    message: str
