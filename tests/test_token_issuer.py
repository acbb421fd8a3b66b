from datetime import timedelta

import pytest

from conftest import NOW, create_dummy_user, sent_request, upload_pdf_obj
from modules.signing.models.signer_token import SignerToken
from modules.signing.services.errors import (
    AlreadyIssued, TokenConsumed, TokenExpired, TokenNotFound, TokenOrphaned
)
from modules.signing.services.signing_request_service import SigningRequestService
from modules.signing.services.token_issuer import TokenIssuer, hash_token


@pytest.fixture
def signing(session, upload_dir):
    owner = create_dummy_user(session)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    return sent_request(session, owner, doc, count=2)


def test_only_the_hash_is_stored(session, signing):
    _, signers, tokens = signing
    raw = tokens[signers[0].id]
    stored = session.query(SignerToken).filter_by(signer_id=signers[0].id).one()
    assert stored.token_hash == hash_token(raw)
    assert raw not in stored.token_hash
    assert tokens[signers[0].id] != tokens[signers[1].id]


def test_issue_refuses_a_second_live_token(session, signing):
    _, signers, _ = signing
    issuer = TokenIssuer(session)
    with pytest.raises(AlreadyIssued):
        issuer.issue(signers[0], timedelta(days=1), NOW)


def test_issue_after_expiry_gives_a_new_token(session, signing):
    _, signers, tokens = signing
    issuer = TokenIssuer(session)
    later = NOW + timedelta(days=8)
    fresh = issuer.issue(signers[0], timedelta(days=1), later)
    assert fresh != tokens[signers[0].id]
    assert issuer.verify(fresh, later).signer_id == signers[0].id


def test_verify_is_repeatable_and_changes_nothing(session, signing):
    _, signers, tokens = signing
    issuer = SigningRequestService.token_issuer(session)
    first = issuer.verify(tokens[signers[0].id], NOW)
    second = issuer.verify(tokens[signers[0].id], NOW)
    assert first == second
    stored = session.query(SignerToken).filter_by(signer_id=signers[0].id).one()
    assert stored.consumed_at is None


def test_verify_unknown_token(session, signing):
    issuer = TokenIssuer(session)
    with pytest.raises(TokenNotFound):
        issuer.verify("not-a-real-token", NOW)
    with pytest.raises(TokenNotFound):
        issuer.verify("", NOW)


def test_verify_expired_token(session, signing):
    _, signers, tokens = signing
    with pytest.raises(TokenExpired):
        TokenIssuer(session).verify(tokens[signers[0].id], NOW + timedelta(days=7, seconds=1))


def test_token_is_valid_up_to_its_expiry_instant(session, signing):
    _, signers, tokens = signing
    grant = TokenIssuer(session).verify(tokens[signers[0].id], NOW + timedelta(days=7))
    assert grant.expires_at == NOW + timedelta(days=7)


def test_consumed_token_is_reported_before_expiry(session, signing):
    _, signers, tokens = signing
    issuer = TokenIssuer(session)
    token = issuer.find(tokens[signers[0].id])
    issuer.consume(token, NOW)
    session.commit()
    with pytest.raises(TokenConsumed):
        issuer.verify(tokens[signers[0].id], NOW + timedelta(days=30))


def test_consume_twice_fails(session, signing):
    _, signers, tokens = signing
    issuer = TokenIssuer(session)
    token = issuer.find(tokens[signers[0].id])
    issuer.consume(token, NOW)
    with pytest.raises(TokenConsumed):
        issuer.consume(token, NOW)


def test_token_of_an_expired_request_is_orphaned(session, upload_dir):
    owner = create_dummy_user(session)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    _, signers, tokens = sent_request(session, owner, doc, count=1, due_date=NOW + timedelta(days=1))

    issuer = SigningRequestService.token_issuer(session)
    with pytest.raises(TokenOrphaned):
        issuer.verify(tokens[signers[0].id], NOW + timedelta(days=2))
    # Writers look at the request themselves
    assert issuer.verify(tokens[signers[0].id], NOW + timedelta(days=2), check_request=False)


def test_revoke_orphans_live_tokens_and_keeps_their_deadline(session, signing):
    request, signers, tokens = signing
    issuer = TokenIssuer(session)
    assert issuer.revoke_for_request(request.id, NOW) == 2
    session.commit()

    stored = session.query(SignerToken).filter_by(signer_id=signers[1].id).one()
    assert stored.revoked_at == NOW
    assert stored.expires_at == NOW + timedelta(days=7)
    assert not stored.is_live(NOW + timedelta(seconds=1))
    with pytest.raises(TokenOrphaned):
        issuer.verify(tokens[signers[1].id], NOW + timedelta(seconds=1))
    assert issuer.live_token_for(signers[1].id, NOW + timedelta(seconds=1)) is None


def test_token_of_a_cancelled_request_is_orphaned_not_expired(session, upload_dir):
    owner = create_dummy_user(session)
    doc = upload_pdf_obj(session, owner.id, upload_dir)
    request, signers, tokens = sent_request(session, owner, doc, count=2)
    SigningRequestService.cancel_signing_request(session, owner, request.id, now=NOW)

    issuer = SigningRequestService.token_issuer(session)
    for signer in signers:
        with pytest.raises(TokenOrphaned):
            issuer.verify(tokens[signer.id], NOW + timedelta(minutes=1))
    # Past the original deadline the link reads as expired
    with pytest.raises(TokenExpired):
        issuer.verify(tokens[signers[0].id], NOW + timedelta(days=8))
