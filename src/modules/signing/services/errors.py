"""
Business-rule rejections raised by the signing engine.

All of them are deterministic: the engine never retries them and the
controllers hand them straight back to the caller.
"""


class SigningError(Exception):
    code = "SigningError"
    status_code = 400
    default_message = "The signing operation was rejected"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidState(SigningError):
    code = "InvalidState"
    status_code = 409
    default_message = "This operation is not allowed in the current state"


class RequestClosed(SigningError):
    code = "RequestClosed"
    status_code = 409
    default_message = "This signing request is closed"


class NotYourTurn(SigningError):
    code = "NotYourTurn"
    status_code = 409
    default_message = "It is not your turn to sign this document"


class DuplicateActiveRequest(SigningError):
    code = "DuplicateActiveRequest"
    status_code = 409
    default_message = "This document already has an active signing request"


class ValidationError(SigningError):
    code = "ValidationError"
    status_code = 422
    default_message = "Invalid input"


class AlreadyIssued(SigningError):
    code = "AlreadyIssued"
    status_code = 409
    default_message = "A valid signing link already exists for this signer"


class NotFound(SigningError):
    code = "NotFound"
    status_code = 404
    default_message = "Not found"


class Forbidden(SigningError):
    code = "Forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action"


class TokenError(SigningError):
    """Credential problems. Callers outside the engine only ever see PUBLIC_MESSAGE."""
    status_code = 410
    PUBLIC_CODE = "InvalidSigningLink"
    PUBLIC_MESSAGE = "This signing link is invalid or has expired"


class TokenNotFound(TokenError):
    code = "TokenNotFound"
    default_message = "Signing token not found"


class TokenExpired(TokenError):
    code = "TokenExpired"
    default_message = "Signing token has expired"


class TokenConsumed(TokenError):
    code = "TokenConsumed"
    default_message = "Signing token has already been used"


class TokenOrphaned(TokenError):
    code = "TokenOrphaned"
    default_message = "Signing token belongs to a closed signing request"
