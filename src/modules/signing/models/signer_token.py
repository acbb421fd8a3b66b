from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base

class SignerToken(Base):
    __tablename__ = 'signer_tokens'

    id = Column(Integer, primary_key=True)
    # sha256 of the secret handed to the signer; the secret itself is never stored
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    signer_id = Column(Integer, ForeignKey('signers.id'), nullable=False, index=True)
    signing_request_id = Column(Integer, ForeignKey('signing_requests.id'), nullable=False)
    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    # Set when the request closes; expires_at keeps the original deadline
    revoked_at = Column(DateTime, nullable=True)

    signer = relationship("Signer", back_populates="tokens")
    signing_request = relationship("SigningRequest")

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def is_live(self, now: datetime) -> bool:
        return not self.consumed and self.revoked_at is None and now <= self.expires_at
