import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from modules.auth.permission import can_perform_action
from modules.documents.models.document import Document, DocumentVersion
from modules.documents.models.user import User
from modules.documents.services.document_service import DocumentService
from modules.notifications.repositories.notification_repository import NotificationRepository
from modules.notifications.services.notification_service import NotificationService
from modules.signing.models.signer import Signer, SignerStatus
from modules.signing.models.signer_token import SignerToken
from modules.signing.models.signing_request import (
    SigningMode, SigningRequest, SigningRequestStatus
)
from modules.signing.services.completion_evaluator import Evaluation, evaluate
from modules.signing.services.errors import (
    DuplicateActiveRequest, Forbidden, InvalidState, NotFound, NotYourTurn,
    RequestClosed, SigningError, TokenNotFound, ValidationError
)
from modules.signing.services.request_locks import request_locks
from modules.signing.services.signature_ledger import SignatureLedger
from modules.signing.services.token_issuer import TokenIssuer

logger = logging.getLogger(__name__)

SIGNING_TOKEN_TTL_DAYS = int(os.getenv("SIGNING_TOKEN_TTL_DAYS", "7"))
VERIFY_RETRY_ATTEMPTS = int(os.getenv("VERIFY_RETRY_ATTEMPTS", "3"))
VERIFY_RETRY_BACKOFF_SECONDS = 0.2

OPEN_STATUSES = [
    SigningRequestStatus.DRAFT,
    SigningRequestStatus.SENT_FOR_SIGNING,
    SigningRequestStatus.PARTIALLY_SIGNED,
]


@dataclass(frozen=True)
class SignerSpec:
    name: str
    email: str
    user_id: Optional[int] = None
    order: Optional[int] = None


@dataclass(frozen=True)
class TokenVerification:
    is_valid: bool
    document_id: int
    document_name: str
    signer_id: int
    signer_name: str
    signing_request_id: int
    expires_at: datetime
    is_current_signer: bool


@dataclass(frozen=True)
class SubmissionResult:
    document_id: int
    signing_request_id: int
    signature_id: int
    signer_id: int
    signer_name: str
    signed_at: datetime
    status: SigningRequestStatus
    signed_count: int
    total_signers: int
    progress_percentage: int
    is_complete: bool
    next_signer_ids: Tuple[int, ...] = field(default_factory=tuple)
    message: str = ""


class SigningRequestService:
    """
    Signing request state machine.

    DRAFT -> SENT_FOR_SIGNING -> PARTIALLY_SIGNED -> FULLY_SIGNED, with
    CANCELLED and EXPIRED reachable from any open state. The status column
    is only a cache: every decision re-evaluates the ledger against the clock.
    Writes for one request are serialized on that request; different
    requests never wait on each other.
    """

    # --- evaluation -----------------------------------------------------

    @staticmethod
    def evaluate_request(session: Session, request: SigningRequest, now: datetime) -> Evaluation:
        events = SignatureLedger(session).events_for(request.id)
        return evaluate(
            request.signers,
            events,
            request.mode,
            now,
            request.due_date,
            sent=request.is_sent,
            cancelled=request.is_cancelled
        )

    @staticmethod
    def token_issuer(session: Session) -> TokenIssuer:
        return TokenIssuer(
            session,
            status_resolver=lambda request, now: SigningRequestService.evaluate_request(session, request, now).status
        )

    @staticmethod
    def _apply_evaluation(request: SigningRequest, evaluation: Evaluation, now: datetime) -> None:
        previous = request.status
        request.status = evaluation.status
        for signer in request.signers:
            signer.status = evaluation.signer_statuses.get(signer.id, signer.status)
        if evaluation.status == SigningRequestStatus.FULLY_SIGNED and request.completed_at is None:
            request.completed_at = now
        if evaluation.status == SigningRequestStatus.EXPIRED and request.expired_at is None:
            request.expired_at = request.due_date or now
        if previous != evaluation.status:
            logger.info(
                "Signing request %s: %s -> %s (%s/%s signed)",
                request.id, previous.value if previous else None, evaluation.status.value,
                evaluation.signed_count, evaluation.total_signers
            )

    # --- lookups --------------------------------------------------------

    @staticmethod
    def _load_for_update(session: Session, request_id: int) -> SigningRequest:
        request = (
            session.query(SigningRequest)
            .filter(SigningRequest.id == request_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if request is None:
            raise NotFound("Signing request not found")
        return request

    @staticmethod
    def get_request(session: Session, request_id: int) -> SigningRequest:
        request = session.get(SigningRequest, request_id)
        if request is None:
            raise NotFound("Signing request not found")
        return request

    @staticmethod
    def view_request(session: Session, viewer: User, request_id: int,
                     now: Optional[datetime] = None) -> Tuple[SigningRequest, Evaluation]:
        """The stored row plus its live evaluation; the cached status may lag behind."""
        request = SigningRequestService.get_request(session, request_id)
        SigningRequestService._ensure_can_view(viewer, request)
        return request, SigningRequestService.evaluate_request(session, request, now or datetime.utcnow())

    @staticmethod
    def latest_request(session: Session, document_id: int) -> Optional[SigningRequest]:
        return (
            session.query(SigningRequest)
            .filter(SigningRequest.document_id == document_id)
            .order_by(SigningRequest.created_at.desc(), SigningRequest.id.desc())
            .first()
        )

    @staticmethod
    def active_request(session: Session, document_id: int, now: datetime) -> Optional[SigningRequest]:
        candidates = (
            session.query(SigningRequest)
            .filter(
                SigningRequest.document_id == document_id,
                SigningRequest.status.in_(OPEN_STATUSES)
            )
            .all()
        )
        for request in candidates:
            if not SigningRequestService.evaluate_request(session, request, now).status.is_terminal:
                return request
        return None

    # --- permissions ----------------------------------------------------

    @staticmethod
    def _ensure_owner(user: User, document: Document) -> None:
        if document.owner_id != user.id and not can_perform_action(user.role, "manage"):
            raise Forbidden("Only the document owner can manage its signing requests")

    @staticmethod
    def _is_signer(user: User, request: SigningRequest) -> bool:
        email = user.email.lower()
        return any(s.user_id == user.id or s.email == email for s in request.signers)

    @staticmethod
    def _ensure_can_view(user: User, request: SigningRequest) -> None:
        if request.document.owner_id == user.id or can_perform_action(user.role, "manage"):
            return
        if SigningRequestService._is_signer(user, request):
            return
        raise Forbidden("You do not have access to this signing request")

    # --- create / send --------------------------------------------------

    @staticmethod
    def _normalize_signers(signers: Sequence[SignerSpec]) -> List[SignerSpec]:
        if not signers:
            raise ValidationError("At least one signer is required")

        normalized = []
        for spec in signers:
            name = (spec.name or "").strip()
            email = (spec.email or "").strip().lower()
            if not name or not email:
                raise ValidationError("Every signer needs a name and an email")
            normalized.append(SignerSpec(name=name, email=email, user_id=spec.user_id, order=spec.order))

        emails = [s.email for s in normalized]
        if len(set(emails)) != len(emails):
            raise ValidationError("A signer cannot be listed twice")

        orders = [s.order for s in normalized]
        if any(o is not None for o in orders):
            if any(o is None for o in orders):
                raise ValidationError("Either every signer has a signing order or none does")
            if len(set(orders)) != len(orders):
                raise ValidationError("Signing order positions must be unique")
            if any(o < 1 for o in orders):
                raise ValidationError("Signing order positions start at 1")
            normalized.sort(key=lambda s: s.order)

        return [
            SignerSpec(name=s.name, email=s.email, user_id=s.user_id, order=position)
            for position, s in enumerate(normalized, start=1)
        ]

    @staticmethod
    def _lock_document(session: Session, document_id: int) -> Document:
        """Row lock that serializes request creation across processes."""
        return (
            session.query(Document)
            .filter(Document.id == document_id)
            .populate_existing()
            .with_for_update()
            .one()
        )

    @staticmethod
    def _insert_draft(
        session: Session,
        owner: User,
        version: DocumentVersion,
        mode: SigningMode,
        specs: Sequence[SignerSpec],
        due_date: Optional[datetime],
        message: Optional[str],
        now: datetime
    ) -> SigningRequest:
        """Adds a DRAFT request and freezes its version. Caller holds the document lock and commits."""
        document = SigningRequestService._lock_document(session, version.document_id)
        active = SigningRequestService.active_request(session, document.id, now)
        if active is not None:
            raise DuplicateActiveRequest(
                f"Signing request {active.id} is still open for document {document.id}"
            )

        DocumentService.finalize_version(session, version.id)
        request = SigningRequest(
            document_id=document.id,
            document_version_id=version.id,
            mode=mode,
            status=SigningRequestStatus.DRAFT,
            due_date=due_date,
            message=message,
            created_at=now,
            created_by_id=owner.id
        )
        for spec in specs:
            request.signers.append(Signer(
                user_id=spec.user_id,
                name=spec.name,
                email=spec.email,
                order_position=spec.order,
                status=SignerStatus.AWAITING_TURN
            ))
        session.add(request)
        session.flush()
        return request

    @staticmethod
    def _check_ttl(token_ttl: Optional[timedelta]) -> timedelta:
        ttl = token_ttl if token_ttl is not None else timedelta(days=SIGNING_TOKEN_TTL_DAYS)
        if ttl <= timedelta(0):
            raise ValidationError("Signing links must be valid for a positive amount of time")
        return ttl

    @staticmethod
    def create_signing_request(
        session: Session,
        owner: User,
        document_version_id: int,
        mode: SigningMode,
        signers: Sequence[SignerSpec],
        due_date: Optional[datetime] = None,
        message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SigningRequest:
        """Creates a DRAFT request over one version and freezes that version."""
        now = now or datetime.utcnow()
        version = DocumentService.get_version(session, document_version_id)
        if version is None:
            raise NotFound("Document version not found")
        document = version.document
        SigningRequestService._ensure_owner(owner, document)

        specs = SigningRequestService._normalize_signers(signers)
        if due_date is not None and due_date <= now:
            raise ValidationError("The due date must be in the future")
        if version.is_sealed:
            raise InvalidState("This document version is already sealed")

        with request_locks.hold(("document", document.id)):
            try:
                request = SigningRequestService._insert_draft(
                    session, owner, version, mode, specs, due_date, message, now
                )
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        logger.info(
            "Signing request %s created for document %s v%s (%s, %s signers)",
            request.id, document.id, version.version_number, mode.value, len(specs)
        )
        return request

    @staticmethod
    def _issue_links(session: Session, request: SigningRequest, ttl: timedelta, now: datetime) -> Dict[int, str]:
        """DRAFT -> SENT_FOR_SIGNING inside the caller's transaction."""
        evaluation = SigningRequestService.evaluate_request(session, request, now)
        if evaluation.status != SigningRequestStatus.DRAFT:
            raise InvalidState(
                f"Only draft requests can be sent; this one is {evaluation.status.value}"
            )
        if not request.document_version.is_finalized:
            raise InvalidState("The document version is still accepting edits")
        if not request.signers:
            raise InvalidState("The signing request has no signers")

        issuer = SigningRequestService.token_issuer(session)
        tokens = {signer.id: issuer.issue(signer, ttl, now) for signer in request.signers}

        request.sent_at = now
        SigningRequestService._apply_evaluation(
            request, SigningRequestService.evaluate_request(session, request, now), now
        )
        return tokens

    @staticmethod
    def send_for_signing(
        session: Session,
        owner: User,
        request_id: int,
        token_ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> Dict[int, str]:
        """DRAFT -> SENT_FOR_SIGNING. Returns {signer_id: raw token}."""
        now = now or datetime.utcnow()
        ttl = SigningRequestService._check_ttl(token_ttl)

        with request_locks.hold(("request", request_id)):
            try:
                request = SigningRequestService._load_for_update(session, request_id)
                SigningRequestService._ensure_owner(owner, request.document)
                tokens = SigningRequestService._issue_links(session, request, ttl, now)
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        SigningRequestService._deliver_links(session, request, tokens, now + ttl)
        return tokens

    @staticmethod
    def send_document_for_signing(
        session: Session,
        owner: User,
        document_id: int,
        signer_user_ids: Sequence[int],
        mode: SigningMode,
        due_date: Optional[datetime] = None,
        message: Optional[str] = None,
        token_ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> Tuple[SigningRequest, Dict[int, str]]:
        """
        Creates a request on the document's current version for registered
        users and sends it, in one transaction: a failed send leaves no draft.
        """
        now = now or datetime.utcnow()
        document = session.get(Document, document_id)
        if document is None:
            raise NotFound("Document not found")
        if document.current_version_id is None:
            raise InvalidState("The document has no uploaded version")
        SigningRequestService._ensure_owner(owner, document)

        if len(set(signer_user_ids)) != len(signer_user_ids):
            raise ValidationError("A signer cannot be listed twice")
        users = {u.id: u for u in session.query(User).filter(User.id.in_(signer_user_ids)).all()}
        missing = [uid for uid in signer_user_ids if uid not in users]
        if missing:
            raise ValidationError(f"Unknown signers: {missing}")

        specs = SigningRequestService._normalize_signers([
            SignerSpec(name=users[uid].name, email=users[uid].email, user_id=uid, order=position)
            for position, uid in enumerate(signer_user_ids, start=1)
        ])
        if due_date is not None and due_date <= now:
            raise ValidationError("The due date must be in the future")
        ttl = SigningRequestService._check_ttl(token_ttl)
        version = document.current_version
        if version.is_sealed:
            raise InvalidState("This document version is already sealed")

        # The new request is invisible to others until commit, so the document lock is enough
        with request_locks.hold(("document", document.id)):
            try:
                request = SigningRequestService._insert_draft(
                    session, owner, version, mode, specs, due_date, message, now
                )
                tokens = SigningRequestService._issue_links(session, request, ttl, now)
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        logger.info(
            "Signing request %s created and sent for document %s v%s (%s, %s signers)",
            request.id, document.id, version.version_number, mode.value, len(specs)
        )
        SigningRequestService._deliver_links(session, request, tokens, now + ttl)
        return request, tokens

    # --- token holder operations ---------------------------------------

    @staticmethod
    def verify_signing_token(
        session: Session,
        document_id: int,
        raw_token: str,
        now: Optional[datetime] = None
    ) -> TokenVerification:
        """
        Read-only. Storage hiccups are retried here, and only here;
        business rejections (token errors) are raised immediately.
        """
        attempts = max(1, VERIFY_RETRY_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                return SigningRequestService._verify_once(session, document_id, raw_token, now or datetime.utcnow())
            except OperationalError:
                session.rollback()
                if attempt == attempts:
                    raise
                logger.warning("Token verification hit a storage error (attempt %s), retrying", attempt)
                time.sleep(VERIFY_RETRY_BACKOFF_SECONDS * 2 ** (attempt - 1))

    @staticmethod
    def _verify_once(session: Session, document_id: int, raw_token: str, now: datetime) -> TokenVerification:
        grant = SigningRequestService.token_issuer(session).verify(raw_token, now)
        request = session.get(SigningRequest, grant.signing_request_id)
        if request.document_id != document_id:
            raise TokenNotFound()
        signer = session.get(Signer, grant.signer_id)
        evaluation = SigningRequestService.evaluate_request(session, request, now)
        return TokenVerification(
            is_valid=True,
            document_id=request.document_id,
            document_name=request.document.name,
            signer_id=signer.id,
            signer_name=signer.name,
            signing_request_id=request.id,
            expires_at=grant.expires_at,
            is_current_signer=evaluation.is_eligible(signer.id)
        )

    @staticmethod
    def submit_signature(
        session: Session,
        document_id: int,
        raw_token: str,
        evidence: bytes,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        location: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SubmissionResult:
        """
        Records one signature. Either everything happens (token consumed,
        event appended, status recomputed, version sealed on completion)
        or nothing does.
        """
        now = now or datetime.utcnow()
        issuer = SigningRequestService.token_issuer(session)

        grant = issuer.verify(raw_token, now, check_request=False)
        if session.get(SigningRequest, grant.signing_request_id).document_id != document_id:
            raise TokenNotFound()
        SignatureLedger.validate_evidence(evidence, device_info)

        with request_locks.hold(("request", grant.signing_request_id)):
            try:
                request = SigningRequestService._load_for_update(session, grant.signing_request_id)
                before = SigningRequestService.evaluate_request(session, request, now)
                if before.status.is_terminal:
                    raise RequestClosed(f"This signing request is {before.status.value.lower()}")

                # Re-read under the lock: a concurrent submit may have used it
                token = (
                    session.query(SignerToken)
                    .filter(SignerToken.id == grant.token_id)
                    .populate_existing()
                    .with_for_update()
                    .one()
                )
                TokenIssuer.check_usable(token, now)
                if not before.is_eligible(token.signer_id):
                    raise NotYourTurn()

                signer = session.get(Signer, token.signer_id)
                version = request.document_version

                issuer.consume(token, now)
                sig_event = SignatureLedger(session).append(
                    request, signer, evidence, version.sha256_hash,
                    device_info=device_info, ip_address=ip_address, location=location, now=now
                )
                signer.signed_at = now

                after = SigningRequestService.evaluate_request(session, request, now)
                SigningRequestService._apply_evaluation(request, after, now)
                if after.is_complete:
                    try:
                        DocumentService.seal_version(session, version.id, now)
                    except ValueError as e:
                        raise InvalidState(str(e)) from e
                session.commit()
            except SigningError as e:
                session.rollback()
                logger.warning("Signature rejected on request %s: %s", grant.signing_request_id, e.code)
                raise
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Storage error while recording a signature on request %s", grant.signing_request_id)
                raise

        if after.is_complete:
            message = "Document fully signed"
        else:
            remaining = after.total_signers - after.signed_count
            message = f"Signature recorded. Waiting for {remaining} more signature{'s' if remaining != 1 else ''}"

        SigningRequestService._notify_after_signature(session, request, before, after)

        return SubmissionResult(
            document_id=request.document_id,
            signing_request_id=request.id,
            signature_id=sig_event.id,
            signer_id=signer.id,
            signer_name=signer.name,
            signed_at=now,
            status=after.status,
            signed_count=after.signed_count,
            total_signers=after.total_signers,
            progress_percentage=after.progress_percentage,
            is_complete=after.is_complete,
            next_signer_ids=after.next_eligible_signer_ids,
            message=message
        )

    @staticmethod
    def decline_signature(
        session: Session,
        document_id: int,
        raw_token: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SigningRequest:
        """A signer refusing to sign closes the whole request, same as an owner cancel."""
        now = now or datetime.utcnow()
        issuer = SigningRequestService.token_issuer(session)
        grant = issuer.verify(raw_token, now, check_request=False)
        if session.get(SigningRequest, grant.signing_request_id).document_id != document_id:
            raise TokenNotFound()

        with request_locks.hold(("request", grant.signing_request_id)):
            try:
                request = SigningRequestService._load_for_update(session, grant.signing_request_id)
                evaluation = SigningRequestService.evaluate_request(session, request, now)
                if evaluation.status.is_terminal:
                    raise RequestClosed(f"This signing request is {evaluation.status.value.lower()}")

                token = (
                    session.query(SignerToken)
                    .filter(SignerToken.id == grant.token_id)
                    .populate_existing()
                    .with_for_update()
                    .one()
                )
                issuer.consume(token, now)
                signer = session.get(Signer, token.signer_id)
                signer.declined_at = now
                signer.decline_reason = reason

                request.cancelled_at = now
                request.cancel_reason = f"Declined by {signer.name}" + (f": {reason}" if reason else "")
                issuer.revoke_for_request(request.id, now)
                SigningRequestService._apply_evaluation(
                    request, SigningRequestService.evaluate_request(session, request, now), now
                )
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        logger.info("Signer %s declined request %s", signer.id, request.id)
        SigningRequestService._notify_closed(session, request)
        return request

    # --- owner operations -----------------------------------------------

    @staticmethod
    def cancel_signing_request(
        session: Session,
        owner: User,
        request_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> SigningRequest:
        now = now or datetime.utcnow()
        with request_locks.hold(("request", request_id)):
            try:
                request = SigningRequestService._load_for_update(session, request_id)
                SigningRequestService._ensure_owner(owner, request.document)
                evaluation = SigningRequestService.evaluate_request(session, request, now)
                if evaluation.status.is_terminal:
                    raise RequestClosed(f"This signing request is {evaluation.status.value.lower()}")

                request.cancelled_at = now
                request.cancel_reason = reason
                SigningRequestService.token_issuer(session).revoke_for_request(request.id, now)
                SigningRequestService._apply_evaluation(
                    request, SigningRequestService.evaluate_request(session, request, now), now
                )
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        SigningRequestService._notify_closed(session, request)
        return request

    @staticmethod
    def remind_signers(
        session: Session,
        owner: User,
        request_id: int,
        signer_ids: Optional[Sequence[int]] = None,
        token_ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> List[int]:
        """
        Reminds the signers who can act right now. A signer whose link ran
        out gets a fresh one; a live link is never duplicated.
        """
        now = now or datetime.utcnow()
        ttl = token_ttl if token_ttl is not None else timedelta(days=SIGNING_TOKEN_TTL_DAYS)

        with request_locks.hold(("request", request_id)):
            try:
                request = SigningRequestService._load_for_update(session, request_id)
                SigningRequestService._ensure_owner(owner, request.document)
                evaluation = SigningRequestService.evaluate_request(session, request, now)
                if evaluation.status.is_terminal:
                    raise RequestClosed(f"This signing request is {evaluation.status.value.lower()}")
                if evaluation.status == SigningRequestStatus.DRAFT:
                    raise InvalidState("The signing request has not been sent yet")

                targets = [
                    s for s in request.signers
                    if evaluation.is_eligible(s.id) and (signer_ids is None or s.id in signer_ids)
                ]
                issuer = SigningRequestService.token_issuer(session)
                fresh_tokens = {}
                for signer in targets:
                    if issuer.live_token_for(signer.id, now) is None:
                        fresh_tokens[signer.id] = issuer.issue(signer, ttl, now)
                session.commit()
            except (SigningError, SQLAlchemyError):
                session.rollback()
                raise

        service = SigningRequestService._notifications(session)
        for signer in targets:
            try:
                service.deliver_signing_reminder(
                    signer.email, signer.user_id, signer.name, request.document_id,
                    request.document.name, request.due_date, fresh_tokens.get(signer.id)
                )
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Could not record reminder for signer %s", signer.id)
        return [s.id for s in targets]

    @staticmethod
    def expire_overdue(session: Session, now: Optional[datetime] = None) -> int:
        """
        Persists EXPIRED for open requests past their due date. Reads are
        already correct without this; it only keeps the cached status and
        the stored tokens in line.
        """
        now = now or datetime.utcnow()
        overdue_ids = [
            row[0] for row in
            session.query(SigningRequest.id)
            .filter(
                SigningRequest.status.in_(OPEN_STATUSES),
                SigningRequest.due_date.isnot(None),
                SigningRequest.due_date < now
            )
            .all()
        ]

        expired = []
        for request_id in overdue_ids:
            with request_locks.hold(("request", request_id)):
                try:
                    request = SigningRequestService._load_for_update(session, request_id)
                    evaluation = SigningRequestService.evaluate_request(session, request, now)
                    if evaluation.status != SigningRequestStatus.EXPIRED:
                        session.rollback()
                        continue
                    SigningRequestService.token_issuer(session).revoke_for_request(request.id, now)
                    SigningRequestService._apply_evaluation(request, evaluation, now)
                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    raise
            expired.append(request)

        for request in expired:
            SigningRequestService._notify_closed(session, request)
        if expired:
            logger.info("Expiry sweep closed %s signing requests", len(expired))
        return len(expired)

    # --- queries --------------------------------------------------------

    @staticmethod
    def get_signature_status(
        session: Session,
        document_id: int,
        viewer: Optional[User] = None,
        now: Optional[datetime] = None
    ) -> dict:
        now = now or datetime.utcnow()
        request = SigningRequestService.latest_request(session, document_id)
        if request is None:
            raise NotFound("This document has no signing request")
        if viewer is not None:
            SigningRequestService._ensure_can_view(viewer, request)

        events = SignatureLedger(session).events_for(request.id)
        evaluation = evaluate(
            request.signers, events, request.mode, now, request.due_date,
            sent=request.is_sent, cancelled=request.is_cancelled
        )
        events_by_signer = {e.signer_id: e for e in events}

        signatures = []
        for signer in sorted(request.signers, key=lambda s: (s.order_position, s.id)):
            sig_event = events_by_signer.get(signer.id)
            signer_status = evaluation.signer_statuses[signer.id]
            signatures.append({
                "signer_id": signer.id,
                "signer_name": signer.name,
                "signer_email": signer.email,
                "status": signer_status,
                "signature_order": signer.order_position,
                "signed_at": sig_event.created_at if sig_event else None,
                "device_info": sig_event.device_info if sig_event else None,
                "is_current_signer": evaluation.is_eligible(signer.id),
                "is_pending": signer_status == SignerStatus.PENDING,
            })

        return {
            "document_id": request.document_id,
            "signing_request_id": request.id,
            "document_version_id": request.document_version_id,
            "status": evaluation.status,
            "signing_mode": request.mode,
            "total_signers": evaluation.total_signers,
            "signed_count": evaluation.signed_count,
            "progress_percentage": evaluation.progress_percentage,
            "is_complete": evaluation.is_complete,
            "due_date": request.due_date,
            "signatures": signatures,
        }

    @staticmethod
    def audit_trail(session: Session, viewer: User, request_id: int, now: Optional[datetime] = None) -> List[dict]:
        now = now or datetime.utcnow()
        request = SigningRequestService.get_request(session, request_id)
        SigningRequestService._ensure_can_view(viewer, request)
        evaluation = SigningRequestService.evaluate_request(session, request, now)
        expired_at = request.due_date if evaluation.status == SigningRequestStatus.EXPIRED else None
        return SignatureLedger(session).audit_trail(request, expired_at)

    @staticmethod
    def pending_for_user(session: Session, user: User, now: Optional[datetime] = None) -> List[dict]:
        """Requests where `user` is one of the signers allowed to sign right now."""
        now = now or datetime.utcnow()
        signers = (
            session.query(Signer)
            .join(SigningRequest, Signer.signing_request_id == SigningRequest.id)
            .filter(
                or_(Signer.user_id == user.id, func.lower(Signer.email) == user.email.lower()),
                SigningRequest.status.in_([
                    SigningRequestStatus.SENT_FOR_SIGNING, SigningRequestStatus.PARTIALLY_SIGNED
                ])
            )
            .order_by(SigningRequest.due_date, SigningRequest.id)
            .all()
        )

        pending = []
        for signer in signers:
            request = signer.signing_request
            evaluation = SigningRequestService.evaluate_request(session, request, now)
            if not evaluation.is_eligible(signer.id):
                continue
            pending.append({
                "signing_request_id": request.id,
                "document_id": request.document_id,
                "document_name": request.document.name,
                "signer_id": signer.id,
                "signing_mode": request.mode,
                "signature_order": signer.order_position,
                "due_date": request.due_date,
                "sent_at": request.sent_at,
                "signed_count": evaluation.signed_count,
                "total_signers": evaluation.total_signers,
            })
        return pending

    # --- notifications --------------------------------------------------

    @staticmethod
    def _notifications(session: Session) -> NotificationService:
        return NotificationService(NotificationRepository(session))

    @staticmethod
    def _deliver_links(session: Session, request: SigningRequest, tokens: Dict[int, str], expires_at: datetime) -> None:
        """Delivery happens after commit; a failure here leaves the request sent."""
        service = SigningRequestService._notifications(session)
        for signer in request.signers:
            note = request.message
            if request.mode == SigningMode.SEQUENTIAL and signer.order_position > 1:
                wait = "You will be able to sign once the previous signers have signed."
                note = f"{note}\n\n{wait}" if note else wait
            try:
                service.deliver_signing_link(
                    signer.email, signer.user_id, signer.name, request.document_id,
                    request.document.name, tokens[signer.id], expires_at, note
                )
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Could not deliver signing link to signer %s", signer.id)

    @staticmethod
    def _notify_after_signature(session: Session, request: SigningRequest,
                                before: Evaluation, after: Evaluation) -> None:
        service = SigningRequestService._notifications(session)
        try:
            if after.is_complete:
                owner = request.document.owner
                recipients = {owner.email: owner.id}
                for signer in request.signers:
                    recipients.setdefault(signer.email, signer.user_id)
                for email, user_id in recipients.items():
                    service.create_signing_status_notification(
                        email, user_id, request.document.name, after.status.value,
                        "The document version is now sealed."
                    )
            elif request.mode == SigningMode.SEQUENTIAL:
                # Tell whoever just became eligible that it is their turn
                newly_eligible = set(after.next_eligible_signer_ids) - set(before.next_eligible_signer_ids)
                for signer in request.signers:
                    if signer.id in newly_eligible:
                        service.deliver_signing_reminder(
                            signer.email, signer.user_id, signer.name, request.document_id,
                            request.document.name, request.due_date
                        )
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Could not record notifications for request %s", request.id)

    @staticmethod
    def _notify_closed(session: Session, request: SigningRequest) -> None:
        service = SigningRequestService._notifications(session)
        owner = request.document.owner
        recipients = {owner.email: owner.id}
        for signer in request.signers:
            if signer.signed_at is None and signer.declined_at is None:
                recipients.setdefault(signer.email, signer.user_id)
        try:
            for email, user_id in recipients.items():
                service.create_signing_status_notification(
                    email, user_id, request.document.name, request.status.value, request.cancel_reason
                )
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Could not record notifications for request %s", request.id)
