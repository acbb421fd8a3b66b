from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum as PyEnum
from database import Base

class SigningMode(PyEnum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"

class SigningRequestStatus(PyEnum):
    DRAFT = "DRAFT"
    SENT_FOR_SIGNING = "SENT_FOR_SIGNING"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    FULLY_SIGNED = "FULLY_SIGNED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

TERMINAL_STATUSES = frozenset({
    SigningRequestStatus.FULLY_SIGNED,
    SigningRequestStatus.CANCELLED,
    SigningRequestStatus.EXPIRED,
})

class SigningRequest(Base):
    __tablename__ = 'signing_requests'

    id = Column(Integer, primary_key=True)
    document_id = Column(Integer, ForeignKey('documents.id'), nullable=False, index=True)
    document_version_id = Column(Integer, ForeignKey('document_versions.id'), nullable=False)
    mode = Column(Enum(SigningMode), nullable=False, default=SigningMode.PARALLEL)
    # Last evaluated status. Reads always recompute it from the ledger and the clock.
    status = Column(Enum(SigningRequestStatus), nullable=False, default=SigningRequestStatus.DRAFT)
    due_date = Column(DateTime, nullable=True)
    message = Column(String(1024), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(1024), nullable=True)
    expired_at = Column(DateTime, nullable=True)

    # Number of ledger entries; bumped on every append
    ledger_head = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_by_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    created_by = relationship("User")

    document = relationship("Document")
    document_version = relationship("DocumentVersion")
    signers = relationship("Signer", back_populates="signing_request", order_by="Signer.order_position",
                           cascade="all, delete-orphan")
    events = relationship("SignatureEvent", back_populates="signing_request", order_by="SignatureEvent.sequence")

    # Compare-and-swap on every UPDATE of the row
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_sent(self) -> bool:
        return self.sent_at is not None

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None
