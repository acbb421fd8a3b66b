from .completion_evaluator import Evaluation, evaluate, progress_percentage
from .signature_ledger import SignatureLedger
from .signing_request_service import SignerSpec, SigningRequestService, SubmissionResult, TokenVerification
from .token_issuer import TokenGrant, TokenIssuer

__all__ = [
    'Evaluation', 'evaluate', 'progress_percentage', 'SignatureLedger',
    'SignerSpec', 'SigningRequestService', 'SubmissionResult', 'TokenVerification',
    'TokenGrant', 'TokenIssuer'
]
