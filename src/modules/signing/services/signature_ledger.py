import hashlib
import logging
import os
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from modules.signing.models.signature_event import SignatureEvent
from modules.signing.models.signer import Signer
from modules.signing.models.signing_request import SigningRequest
from modules.signing.services.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_EVIDENCE_BYTES = int(os.getenv("MAX_EVIDENCE_BYTES", str(2 * 1024 * 1024)))
MAX_DEVICE_INFO_LENGTH = 512


class SignatureLedger:
    """Append-only record of signing acts for one request at a time."""

    def __init__(self, session: Session):
        self.session = session

    def events_for(self, signing_request_id: int) -> List[SignatureEvent]:
        return (
            self.session.query(SignatureEvent)
            .filter(SignatureEvent.signing_request_id == signing_request_id)
            .order_by(SignatureEvent.sequence)
            .all()
        )

    def next_sequence(self, signing_request_id: int) -> int:
        current = (
            self.session.query(func.max(SignatureEvent.sequence))
            .filter(SignatureEvent.signing_request_id == signing_request_id)
            .scalar()
        )
        return (current or 0) + 1

    @staticmethod
    def validate_evidence(evidence: bytes, device_info: Optional[str]) -> None:
        if not isinstance(evidence, (bytes, bytearray)) or len(evidence) == 0:
            raise ValidationError("Signature evidence is required")
        if len(evidence) > MAX_EVIDENCE_BYTES:
            raise ValidationError(f"Signature evidence exceeds {MAX_EVIDENCE_BYTES} bytes")
        if device_info is not None and len(device_info) > MAX_DEVICE_INFO_LENGTH:
            raise ValidationError("Device information is too long")

    def append(
        self,
        request: SigningRequest,
        signer: Signer,
        evidence: bytes,
        document_sha256: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SignatureEvent:
        """Adds one event and advances the request's ledger head. Does not commit."""
        if signer.signing_request_id != request.id:
            raise ValidationError("Signer does not belong to this signing request")
        self.validate_evidence(evidence, device_info)

        now = now or datetime.utcnow()
        sig_event = SignatureEvent(
            signing_request_id=request.id,
            signer_id=signer.id,
            sequence=self.next_sequence(request.id),
            evidence=bytes(evidence),
            evidence_sha256=hashlib.sha256(evidence).hexdigest(),
            document_sha256=document_sha256,
            device_info=device_info,
            ip_address=ip_address,
            location=location,
            created_at=now
        )
        self.session.add(sig_event)
        request.ledger_head = sig_event.sequence
        self.session.flush()

        logger.info("Ledger: request %s event #%s by signer %s", request.id, sig_event.sequence, signer.id)
        return sig_event

    def audit_trail(self, request: SigningRequest, expired_at: Optional[datetime] = None) -> List[dict]:
        """Chronological history of a request, rebuilt from its timestamps and events."""
        signers = {s.id: s for s in request.signers}
        document_name = request.document.name if request.document else None
        entries = [{
            "action": "CREATED",
            "actor": request.created_by.name if request.created_by else None,
            "details": f"Signing request created for '{document_name}' ({request.mode.value.lower()}, "
                       f"{len(signers)} signers)",
            "timestamp": request.created_at
        }]
        if request.sent_at:
            entries.append({
                "action": "SENT_FOR_SIGNING",
                "actor": request.created_by.name if request.created_by else None,
                "details": "Signing links issued",
                "timestamp": request.sent_at
            })
        for sig_event in self.events_for(request.id):
            signer = signers.get(sig_event.signer_id)
            details = f"Signature #{sig_event.sequence}"
            if sig_event.device_info:
                details = f"{details} from {sig_event.device_info}"
            if sig_event.ip_address:
                details = f"{details} ({sig_event.ip_address})"
            entries.append({
                "action": "SIGNED",
                "actor": signer.name if signer else None,
                "details": details,
                "timestamp": sig_event.created_at
            })
        for signer in signers.values():
            if signer.declined_at:
                entries.append({
                    "action": "DECLINED",
                    "actor": signer.name,
                    "details": signer.decline_reason or "Declined to sign",
                    "timestamp": signer.declined_at
                })
        if request.completed_at:
            entries.append({
                "action": "FULLY_SIGNED",
                "actor": None,
                "details": "All signers have signed; document version sealed",
                "timestamp": request.completed_at
            })
        if request.cancelled_at:
            entries.append({
                "action": "CANCELLED",
                "actor": None,
                "details": request.cancel_reason or "Signing request cancelled",
                "timestamp": request.cancelled_at
            })
        expired_at = request.expired_at or expired_at
        if expired_at:
            entries.append({
                "action": "EXPIRED",
                "actor": None,
                "details": "Due date passed before all signatures were collected",
                "timestamp": expired_at
            })
        entries.sort(key=lambda e: e["timestamp"])
        return entries
