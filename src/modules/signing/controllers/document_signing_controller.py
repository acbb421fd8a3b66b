# src/modules/signing/controllers/document_signing_controller.py
import base64
import binascii
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db
from modules.auth.controllers.auth_controller import get_current_user
from modules.auth.dependencies import require_permission
from modules.documents.models.user import User
from modules.signing.controllers.signing_controller import http_error
from modules.signing.models.schemas import (
    DeclineRequest, DocumentSendForSigningRequest, SendForSigningResponse, SignDocumentRequest,
    SignDocumentResponse, SignatureStatusResponse, SigningRequestResponse, VerifyTokenResponse
)
from modules.signing.services.errors import SigningError, TokenError, ValidationError
from modules.signing.services.signing_request_service import SigningRequestService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["signing"]
)


def _decode_signature_data(signature_data: str) -> bytes:
    data = signature_data.strip()
    if data.startswith("data:"):
        # data:image/png;base64,....
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Signature data must be base64 encoded")


@router.post("/{document_id}/send-for-signing", response_model=SendForSigningResponse)
def send_document_for_signing(
    document_id: int,
    payload: DocumentSendForSigningRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("request_signatures"))
):
    """
    Opens a signing request over the current version of the document
    for the given users and mails each of them a signing link.
    """
    try:
        request, tokens = SigningRequestService.send_document_for_signing(
            db, current_user, document_id, payload.signer_ids, payload.signing_mode,
            payload.due_date, payload.message, timedelta(days=payload.token_expiration_days)
        )
    except SigningError as e:
        raise http_error(e)
    return SendForSigningResponse(
        document_id=document_id,
        signing_request_id=request.id,
        status=request.status,
        total_signers=len(tokens),
        message=f"Document sent for signing to {len(tokens)} signer{'s' if len(tokens) != 1 else ''}",
        signing_tokens=tokens
    )


@router.get("/{document_id}/verify-token", response_model=VerifyTokenResponse)
def verify_signing_token(
    document_id: int,
    token: str = Query(..., min_length=1),
    db: Session = Depends(get_db)
):
    try:
        verification = SigningRequestService.verify_signing_token(db, document_id, token)
    except TokenError as e:
        logger.info("Signing link check failed for document %s: %s", document_id, e.code)
        return VerifyTokenResponse(is_valid=False, message=TokenError.PUBLIC_MESSAGE)
    except SQLAlchemyError:
        raise HTTPException(503, {"code": "StorageUnavailable", "message": "Please try again in a moment"})
    return VerifyTokenResponse(
        is_valid=True,
        document_name=verification.document_name,
        signer_name=verification.signer_name,
        expires_at=verification.expires_at,
        is_current_signer=verification.is_current_signer,
        message=None if verification.is_current_signer else "Waiting for previous signers"
    )


@router.post("/{document_id}/sign", response_model=SignDocumentResponse)
def sign_document(
    document_id: int,
    payload: SignDocumentRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """Records the signature of whoever holds the token. No login needed."""
    ip_address = request.client.host if request.client else None
    try:
        evidence = _decode_signature_data(payload.signature_data)
        result = SigningRequestService.submit_signature(
            db, document_id, payload.signing_token, evidence,
            device_info=payload.device_info, ip_address=ip_address, location=payload.location
        )
    except SigningError as e:
        raise http_error(e)
    except SQLAlchemyError:
        raise HTTPException(503, {"code": "StorageUnavailable", "message": "The signature was not recorded, please retry"})

    return SignDocumentResponse(
        document_id=result.document_id,
        signature_id=result.signature_id,
        signer_name=result.signer_name,
        signed_at=result.signed_at,
        status=result.status,
        is_complete=result.is_complete,
        signed_count=result.signed_count,
        total_signers=result.total_signers,
        progress_percentage=result.progress_percentage,
        next_signer_id=result.next_signer_ids[0] if result.next_signer_ids else None,
        next_signer_ids=list(result.next_signer_ids),
        message=result.message
    )


@router.post("/{document_id}/decline", response_model=SigningRequestResponse)
def decline_signature(
    document_id: int,
    payload: DeclineRequest,
    db: Session = Depends(get_db)
):
    try:
        return SigningRequestService.decline_signature(db, document_id, payload.signing_token, payload.reason)
    except SigningError as e:
        raise http_error(e)


@router.get("/{document_id}/signature-status", response_model=SignatureStatusResponse)
def get_signature_status(
    document_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return SigningRequestService.get_signature_status(db, document_id, current_user)
    except SigningError as e:
        raise http_error(e)
