from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
from database import Base

class SignerStatus(PyEnum):
    AWAITING_TURN = "AWAITING_TURN"
    PENDING = "PENDING"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"

class Signer(Base):
    __tablename__ = 'signers'
    __table_args__ = (
        UniqueConstraint('signing_request_id', 'email', name='uq_signer_email'),
    )

    id = Column(Integer, primary_key=True)
    signing_request_id = Column(Integer, ForeignKey('signing_requests.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    order_position = Column(Integer, nullable=False)
    # Cached from the last evaluation, like SigningRequest.status
    status = Column(Enum(SignerStatus), nullable=False, default=SignerStatus.AWAITING_TURN)
    signed_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    decline_reason = Column(String(1024), nullable=True)

    signing_request = relationship("SigningRequest", back_populates="signers")
    user = relationship("User")
    tokens = relationship("SignerToken", back_populates="signer", order_by="SignerToken.issued_at")
