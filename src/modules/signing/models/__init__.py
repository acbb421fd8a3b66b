from .signing_request import SigningMode, SigningRequest, SigningRequestStatus, TERMINAL_STATUSES
from .signer import Signer, SignerStatus
from .signer_token import SignerToken
from .signature_event import LedgerImmutableError, SignatureEvent

__all__ = [
    'SigningMode', 'SigningRequest', 'SigningRequestStatus', 'TERMINAL_STATUSES',
    'Signer', 'SignerStatus', 'SignerToken', 'LedgerImmutableError', 'SignatureEvent'
]
