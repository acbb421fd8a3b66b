import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from modules.signing.models.signer import Signer
from modules.signing.models.signer_token import SignerToken
from modules.signing.models.signing_request import SigningRequest, SigningRequestStatus
from modules.signing.services.errors import (
    AlreadyIssued, TokenConsumed, TokenExpired, TokenNotFound, TokenOrphaned
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class TokenGrant:
    token_id: int
    signer_id: int
    signing_request_id: int
    expires_at: datetime


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """
    Mints and checks per-signer credentials.

    `status_resolver(request, now)` returns the live status of a request;
    the state machine passes its lazy evaluation so that an expired or
    completed request orphans its tokens without any write.
    """

    def __init__(self, session: Session,
                 status_resolver: Optional[Callable[[SigningRequest, datetime], SigningRequestStatus]] = None):
        self.session = session
        self.status_resolver = status_resolver or (lambda request, now: request.status)

    def find(self, raw_token: str) -> Optional[SignerToken]:
        if not raw_token:
            return None
        return (
            self.session.query(SignerToken)
            .filter(SignerToken.token_hash == hash_token(raw_token))
            .first()
        )

    def live_token_for(self, signer_id: int, now: datetime) -> Optional[SignerToken]:
        return (
            self.session.query(SignerToken)
            .filter(
                SignerToken.signer_id == signer_id,
                SignerToken.consumed_at.is_(None),
                SignerToken.revoked_at.is_(None),
                SignerToken.expires_at >= now
            )
            .first()
        )

    def issue(self, signer: Signer, ttl: timedelta, now: Optional[datetime] = None) -> str:
        """Returns the raw token. Only its hash is persisted. Does not commit."""
        now = now or datetime.utcnow()
        if self.live_token_for(signer.id, now) is not None:
            raise AlreadyIssued(f"Signer {signer.id} already holds a valid signing link")

        raw_token = secrets.token_urlsafe(TOKEN_BYTES)
        token = SignerToken(
            token_hash=hash_token(raw_token),
            signer_id=signer.id,
            signing_request_id=signer.signing_request_id,
            issued_at=now,
            expires_at=now + ttl
        )
        self.session.add(token)
        self.session.flush()
        logger.info("Issued signing token %s for signer %s (expires %s)", token.id, signer.id, token.expires_at)
        return raw_token

    def verify(self, raw_token: str, now: Optional[datetime] = None, check_request: bool = True) -> TokenGrant:
        """
        Read-only check of a token. Safe to call any number of times.
        Order: unknown, consumed, expired, orphaned.

        Writers pass check_request=False and look at the request
        themselves under its lock, reporting RequestClosed instead.
        """
        now = now or datetime.utcnow()
        token = self.find(raw_token)
        if token is None:
            raise TokenNotFound()
        self.check_usable(token, now)

        if check_request and (
            token.revoked_at is not None
            or self.status_resolver(token.signing_request, now).is_terminal
        ):
            raise TokenOrphaned()

        return TokenGrant(
            token_id=token.id,
            signer_id=token.signer_id,
            signing_request_id=token.signing_request_id,
            expires_at=token.expires_at
        )

    @staticmethod
    def check_usable(token: SignerToken, now: datetime) -> None:
        if token.consumed:
            raise TokenConsumed()
        if now > token.expires_at:
            raise TokenExpired()

    def consume(self, token: SignerToken, now: Optional[datetime] = None) -> SignerToken:
        """
        Marks the token used. Must run in the same transaction as the
        ledger append it authorizes. Does not commit.
        """
        now = now or datetime.utcnow()
        self.check_usable(token, now)
        token.consumed_at = now
        logger.info("Consumed signing token %s of signer %s", token.id, token.signer_id)
        return token

    def revoke_for_request(self, signing_request_id: int, now: Optional[datetime] = None) -> int:
        """Revokes every live token of a request that just closed. Does not commit."""
        now = now or datetime.utcnow()
        live = (
            self.session.query(SignerToken)
            .filter(
                SignerToken.signing_request_id == signing_request_id,
                SignerToken.consumed_at.is_(None),
                SignerToken.revoked_at.is_(None),
                SignerToken.expires_at > now
            )
            .all()
        )
        for token in live:
            token.revoked_at = now
        if live:
            logger.info("Revoked %s signing tokens of request %s", len(live), signing_request_id)
        return len(live)
