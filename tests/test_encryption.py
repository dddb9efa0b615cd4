"""Tests for at-rest credential encryption."""

import logging

from notchly.utils.encryption import decrypt_credential, encrypt_credential


def test_ciphertext_hides_plaintext():
    token = encrypt_credential("gsk_plain_value", secret="k1")
    assert "gsk_plain_value" not in token
    assert decrypt_credential(token, secret="k1") == "gsk_plain_value"


def test_wrong_secret_returns_empty(caplog):
    token = encrypt_credential("gsk_plain_value", secret="k1")
    with caplog.at_level(logging.WARNING):
        assert decrypt_credential(token, secret="k2") == ""
    assert "will ask for it again" in caplog.text
    assert "gsk_plain_value" not in caplog.text


def test_garbage_ciphertext_returns_empty():
    assert decrypt_credential("not-a-fernet-token", secret="k1") == ""
