import pytest

from fanpass.model.qrtoken import QrTokenService


def test_issue_and_verify(qr):
    token, token_hash = qr.issue()
    assert token != token_hash
    assert len(token) >= 40
    assert qr.verify(token, token_hash)


def test_tokens_are_unique(qr):
    tokens = {qr.issue()[0] for _ in range(50)}
    assert len(tokens) == 50


def test_hash_is_bound_to_the_secret(qr):
    token, token_hash = qr.issue()
    other = QrTokenService("another-secret")
    assert not other.verify(token, token_hash)


@pytest.mark.parametrize("token", [None, "", "garbage", "🎟️", 12345])
def test_garbage_is_rejected_without_raising(qr, token):
    _, token_hash = qr.issue()
    assert qr.verify(token, token_hash) is False


def test_missing_hash(qr):
    token, _ = qr.issue()
    assert qr.verify(token, None) is False


def test_empty_secret_refused():
    with pytest.raises(ValueError):
        QrTokenService("")
