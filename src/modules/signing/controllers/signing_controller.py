# src/modules/signing/controllers/signing_controller.py
import logging
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from database import get_db
from modules.auth.controllers.auth_controller import get_current_user
from modules.auth.dependencies import require_permission
from modules.documents.models.user import User
from modules.signing.models.schemas import (
    AuditEntryResponse, CancelSigningRequest, CreateSigningRequest, PendingSignatureResponse,
    RemindSignersRequest, RemindSignersResponse, SendForSigningRequest, SendForSigningResponse,
    SigningRequestCreatedResponse, SigningRequestResponse
)
from modules.signing.services.errors import SigningError, TokenError
from modules.signing.services.signing_request_service import SignerSpec, SigningRequestService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/signing-requests",
    tags=["signing"]
)


def http_error(e: SigningError) -> HTTPException:
    """Maps an engine rejection to the response the caller sees."""
    if isinstance(e, TokenError):
        # Same answer whatever went wrong with the link
        logger.info("Rejected signing link: %s", e.code)
        return HTTPException(
            status_code=e.status_code,
            detail={"code": TokenError.PUBLIC_CODE, "message": TokenError.PUBLIC_MESSAGE}
        )
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


@router.post("", response_model=SigningRequestCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_signing_request(
    payload: CreateSigningRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("request_signatures"))
):
    signers = [
        SignerSpec(name=s.name, email=s.email, user_id=s.user_id, order=s.signature_order)
        for s in payload.signers
    ]
    try:
        request = SigningRequestService.create_signing_request(
            db, current_user, payload.document_version_id, payload.signing_mode,
            signers, payload.due_date, payload.message
        )
    except SigningError as e:
        raise http_error(e)
    return SigningRequestCreatedResponse(
        signing_request_id=request.id,
        document_id=request.document_id,
        status=request.status
    )


@router.post("/{request_id}/send", response_model=SendForSigningResponse)
def send_for_signing(
    request_id: int,
    payload: SendForSigningRequest = SendForSigningRequest(),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("request_signatures"))
):
    try:
        tokens = SigningRequestService.send_for_signing(
            db, current_user, request_id, timedelta(days=payload.token_expiration_days)
        )
    except SigningError as e:
        raise http_error(e)
    request = SigningRequestService.get_request(db, request_id)
    return SendForSigningResponse(
        document_id=request.document_id,
        signing_request_id=request.id,
        status=request.status,
        total_signers=len(tokens),
        message=f"Signing links sent to {len(tokens)} signer{'s' if len(tokens) != 1 else ''}",
        signing_tokens=tokens
    )


@router.post("/{request_id}/cancel", response_model=SigningRequestResponse)
def cancel_signing_request(
    request_id: int,
    payload: CancelSigningRequest = CancelSigningRequest(),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return SigningRequestService.cancel_signing_request(db, current_user, request_id, payload.reason)
    except SigningError as e:
        raise http_error(e)


@router.post("/{request_id}/remind", response_model=RemindSignersResponse)
def remind_signers(
    request_id: int,
    payload: RemindSignersRequest = RemindSignersRequest(),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission("request_signatures"))
):
    try:
        reminded = SigningRequestService.remind_signers(db, current_user, request_id, payload.signer_ids)
    except SigningError as e:
        raise http_error(e)
    return RemindSignersResponse(reminded_signer_ids=reminded)


@router.get("/pending/me", response_model=List[PendingSignatureResponse])
def my_pending_signatures(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return SigningRequestService.pending_for_user(db, current_user)


@router.get("/{request_id}", response_model=SigningRequestResponse)
def get_signing_request(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        request, evaluation = SigningRequestService.view_request(db, current_user, request_id)
    except SigningError as e:
        raise http_error(e)
    response = SigningRequestResponse.model_validate(request)
    return response.model_copy(update={"status": evaluation.status})


@router.get("/{request_id}/audit-trail", response_model=List[AuditEntryResponse])
def get_audit_trail(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    try:
        return SigningRequestService.audit_trail(db, current_user, request_id)
    except SigningError as e:
        raise http_error(e)
