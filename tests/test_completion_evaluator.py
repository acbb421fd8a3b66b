from datetime import datetime, timedelta
from types import SimpleNamespace

from modules.signing.models.signer import SignerStatus
from modules.signing.models.signing_request import SigningMode, SigningRequestStatus
from modules.signing.services.completion_evaluator import evaluate, progress_percentage

NOW = datetime(2030, 1, 1, 12, 0, 0)


def signers(count):
    return [SimpleNamespace(id=i, order_position=i, declined_at=None) for i in range(1, count + 1)]


def events(*signer_ids):
    return [SimpleNamespace(signer_id=i) for i in signer_ids]


def test_parallel_request_without_signatures_lets_everyone_sign():
    result = evaluate(signers(3), [], SigningMode.PARALLEL, NOW, None)
    assert result.status == SigningRequestStatus.SENT_FOR_SIGNING
    assert result.next_eligible_signer_ids == (1, 2, 3)
    assert result.progress_percentage == 0


def test_parallel_request_one_of_three_signed():
    result = evaluate(signers(3), events(2), SigningMode.PARALLEL, NOW, None)
    assert result.status == SigningRequestStatus.PARTIALLY_SIGNED
    assert result.next_eligible_signer_ids == (1, 3)
    assert result.signed_count == 1
    assert result.progress_percentage == 33
    assert result.signer_statuses[2] == SignerStatus.SIGNED
    assert result.signer_statuses[1] == SignerStatus.PENDING


def test_sequential_request_only_first_unsigned_is_eligible():
    result = evaluate(signers(3), events(1), SigningMode.SEQUENTIAL, NOW, None)
    assert result.next_eligible_signer_ids == (2,)
    assert result.signer_statuses[2] == SignerStatus.PENDING
    assert result.signer_statuses[3] == SignerStatus.AWAITING_TURN


def test_sequential_order_follows_order_position_not_id():
    people = [
        SimpleNamespace(id=10, order_position=2, declined_at=None),
        SimpleNamespace(id=20, order_position=1, declined_at=None),
    ]
    result = evaluate(people, [], SigningMode.SEQUENTIAL, NOW, None)
    assert result.next_eligible_signer_ids == (20,)


def test_all_signed_is_fully_signed_with_nobody_left():
    result = evaluate(signers(2), events(1, 2), SigningMode.PARALLEL, NOW, None)
    assert result.status == SigningRequestStatus.FULLY_SIGNED
    assert result.is_complete
    assert result.next_eligible_signer_ids == ()
    assert result.progress_percentage == 100


def test_fully_signed_wins_over_expiry_and_cancel():
    past_due = NOW - timedelta(days=1)
    result = evaluate(signers(2), events(1, 2), SigningMode.PARALLEL, NOW, past_due, cancelled=True)
    assert result.status == SigningRequestStatus.FULLY_SIGNED


def test_cancelled_wins_over_expired():
    past_due = NOW - timedelta(days=1)
    result = evaluate(signers(2), events(1), SigningMode.PARALLEL, NOW, past_due, cancelled=True)
    assert result.status == SigningRequestStatus.CANCELLED
    assert result.next_eligible_signer_ids == ()


def test_past_due_date_is_expired_without_any_write():
    due = NOW - timedelta(seconds=1)
    result = evaluate(signers(2), events(1), SigningMode.PARALLEL, NOW, due)
    assert result.status == SigningRequestStatus.EXPIRED
    assert result.next_eligible_signer_ids == ()


def test_exactly_at_due_date_is_still_open():
    result = evaluate(signers(2), [], SigningMode.PARALLEL, NOW, NOW)
    assert result.status == SigningRequestStatus.SENT_FOR_SIGNING


def test_unsent_request_is_draft_and_nobody_may_sign():
    result = evaluate(signers(2), [], SigningMode.PARALLEL, NOW, None, sent=False)
    assert result.status == SigningRequestStatus.DRAFT
    assert result.next_eligible_signer_ids == ()
    assert set(result.signer_statuses.values()) == {SignerStatus.AWAITING_TURN}


def test_events_from_unknown_signers_are_ignored():
    result = evaluate(signers(2), events(1, 99), SigningMode.PARALLEL, NOW, None)
    assert result.signed_count == 1


def test_declined_signer_is_reported_as_declined():
    people = signers(2)
    people[1].declined_at = NOW
    result = evaluate(people, [], SigningMode.PARALLEL, NOW, None, cancelled=True)
    assert result.signer_statuses[2] == SignerStatus.DECLINED


def test_progress_rounds_halves_up():
    assert progress_percentage(1, 3) == 33
    assert progress_percentage(2, 3) == 67
    assert progress_percentage(1, 8) == 13
    assert progress_percentage(0, 0) == 0
    assert progress_percentage(5, 5) == 100


def test_nobody_is_pending_on_an_expired_request():
    due = NOW - timedelta(hours=1)
    result = evaluate(signers(3), events(1), SigningMode.PARALLEL, NOW, due)
    assert result.status == SigningRequestStatus.EXPIRED
    assert result.signer_statuses == {
        1: SignerStatus.SIGNED, 2: SignerStatus.AWAITING_TURN, 3: SignerStatus.AWAITING_TURN
    }


def test_nobody_is_pending_on_a_cancelled_request():
    result = evaluate(signers(2), [], SigningMode.SEQUENTIAL, NOW, None, cancelled=True)
    assert result.status == SigningRequestStatus.CANCELLED
    assert SignerStatus.PENDING not in result.signer_statuses.values()


def test_pending_signers_are_exactly_the_eligible_ones():
    for mode in (SigningMode.PARALLEL, SigningMode.SEQUENTIAL):
        result = evaluate(signers(4), events(1), mode, NOW, None)
        pending = tuple(i for i, st in result.signer_statuses.items() if st == SignerStatus.PENDING)
        assert pending == result.next_eligible_signer_ids
