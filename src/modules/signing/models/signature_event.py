from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, LargeBinary, UniqueConstraint, event
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base

class LedgerImmutableError(Exception):
    """Raised when something tries to rewrite or remove a signature event"""
    pass

class SignatureEvent(Base):
    __tablename__ = 'signature_events'
    __table_args__ = (
        UniqueConstraint('signing_request_id', 'signer_id', name='uq_event_signer'),
        UniqueConstraint('signing_request_id', 'sequence', name='uq_event_sequence'),
    )

    id = Column(Integer, primary_key=True)
    signing_request_id = Column(Integer, ForeignKey('signing_requests.id'), nullable=False, index=True)
    signer_id = Column(Integer, ForeignKey('signers.id'), nullable=False)
    sequence = Column(Integer, nullable=False)

    # Opaque: stored and hashed, never interpreted
    evidence = Column(LargeBinary, nullable=False)
    evidence_sha256 = Column(String(64), nullable=False)
    document_sha256 = Column(String(64), nullable=False)
    device_info = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    location = Column(String(128), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    signing_request = relationship("SigningRequest", back_populates="events")
    signer = relationship("Signer")


@event.listens_for(SignatureEvent, "before_update")
def _refuse_update(mapper, connection, target):
    raise LedgerImmutableError(f"Signature event {target.id} cannot be modified")


@event.listens_for(SignatureEvent, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Signature event {target.id} cannot be deleted")
