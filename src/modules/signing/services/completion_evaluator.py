"""
Completion evaluator.

Pure function over the signer list, the ledger and the clock. The state
machine calls it before and after every change; nothing here touches the
database.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from modules.signing.models.signing_request import SigningMode, SigningRequestStatus
from modules.signing.models.signer import SignerStatus


@dataclass(frozen=True)
class Evaluation:
    status: SigningRequestStatus
    next_eligible_signer_ids: Tuple[int, ...]
    signer_statuses: Dict[int, SignerStatus] = field(default_factory=dict)
    signed_count: int = 0
    total_signers: int = 0
    progress_percentage: int = 0

    @property
    def is_complete(self) -> bool:
        return self.status == SigningRequestStatus.FULLY_SIGNED

    def is_eligible(self, signer_id: int) -> bool:
        return signer_id in self.next_eligible_signer_ids


def progress_percentage(signed: int, total: int) -> int:
    """round(100 * signed / total), halves rounded up: 1/3 -> 33, 2/3 -> 67"""
    if total <= 0:
        return 0
    return (200 * signed + total) // (2 * total)


def _parallel_eligible(ordered_signers: Sequence, signed: Set[int]) -> List[int]:
    return [s.id for s in ordered_signers if s.id not in signed]


def _sequential_eligible(ordered_signers: Sequence, signed: Set[int]) -> List[int]:
    for s in ordered_signers:
        if s.id not in signed:
            return [s.id]
    return []


# One entry per mode; a new mode only needs a new function here
ELIGIBILITY_RULES: Dict[SigningMode, Callable[[Sequence, Set[int]], List[int]]] = {
    SigningMode.PARALLEL: _parallel_eligible,
    SigningMode.SEQUENTIAL: _sequential_eligible,
}


def evaluate(
    signers: Iterable,
    events: Iterable,
    mode: SigningMode,
    now: datetime,
    due_date: Optional[datetime],
    *,
    sent: bool = True,
    cancelled: bool = False
) -> Evaluation:
    """
    Computes the aggregate status and who may sign next.

    `signers` need `id` and `order_position` (and optionally `declined_at`);
    `events` need `signer_id`. Precedence: fully signed, then cancelled,
    then expired, then draft, then partially signed / sent.
    """
    ordered = sorted(signers, key=lambda s: (s.order_position, s.id))
    signer_ids = {s.id for s in ordered}
    signed = {e.signer_id for e in events if e.signer_id in signer_ids}

    total = len(ordered)
    signed_count = len(signed)

    if total > 0 and signed_count == total:
        status = SigningRequestStatus.FULLY_SIGNED
    elif cancelled:
        status = SigningRequestStatus.CANCELLED
    elif due_date is not None and now > due_date:
        status = SigningRequestStatus.EXPIRED
    elif not sent:
        status = SigningRequestStatus.DRAFT
    elif signed_count > 0:
        status = SigningRequestStatus.PARTIALLY_SIGNED
    else:
        status = SigningRequestStatus.SENT_FOR_SIGNING

    if status in (SigningRequestStatus.SENT_FOR_SIGNING, SigningRequestStatus.PARTIALLY_SIGNED):
        next_eligible = tuple(ELIGIBILITY_RULES[mode](ordered, signed))
    else:
        next_eligible = ()

    # Only signers who may act now are pending; on a closed request nobody is
    signer_statuses = {}
    for s in ordered:
        if s.id in signed:
            signer_statuses[s.id] = SignerStatus.SIGNED
        elif getattr(s, "declined_at", None) is not None:
            signer_statuses[s.id] = SignerStatus.DECLINED
        elif s.id in next_eligible:
            signer_statuses[s.id] = SignerStatus.PENDING
        else:
            signer_statuses[s.id] = SignerStatus.AWAITING_TURN

    return Evaluation(
        status=status,
        next_eligible_signer_ids=next_eligible,
        signer_statuses=signer_statuses,
        signed_count=signed_count,
        total_signers=total,
        progress_percentage=progress_percentage(signed_count, total),
    )
