from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum
from database import Base

class DocumentType(PyEnum):
    OWNERSHIP_AGREEMENT = "OWNERSHIP_AGREEMENT"
    MAINTENANCE_CONTRACT = "MAINTENANCE_CONTRACT"
    INSURANCE_POLICY = "INSURANCE_POLICY"
    CHECK_IN_REPORT = "CHECK_IN_REPORT"
    CHECK_OUT_REPORT = "CHECK_OUT_REPORT"
    OTHER = "OTHER"

class Document(Base):
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    type = Column(Enum(DocumentType), nullable=False, default=DocumentType.OTHER)
    description = Column(String(1024), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    owner_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    owner = relationship("User", back_populates="documents")

    # Points at the newest upload; older versions stay readable
    current_version_id = Column(Integer, ForeignKey('document_versions.id', use_alter=True), nullable=True)
    current_version = relationship("DocumentVersion", foreign_keys=[current_version_id], post_update=True)

    versions = relationship(
        "DocumentVersion",
        back_populates="document",
        foreign_keys="DocumentVersion.document_id",
        order_by="DocumentVersion.version_number",
        cascade="all, delete-orphan"
    )

class DocumentVersion(Base):
    __tablename__ = 'document_versions'
    __table_args__ = (
        UniqueConstraint('document_id', 'version_number', name='uq_document_version_number'),
    )

    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey('documents.id'), nullable=False)
    version_number = Column(Integer, nullable=False)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    sha256_hash = Column(String(64), nullable=False)
    page_count = Column(Integer, nullable=True)
    author = Column(String, nullable=True)
    is_finalized = Column(Boolean, nullable=False, default=False)
    is_sealed = Column(Boolean, nullable=False, default=False)
    sealed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    created_by_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    created_by = relationship("User")

    document = relationship("Document", back_populates="versions", foreign_keys=[document_id])
