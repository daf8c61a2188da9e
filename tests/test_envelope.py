"""
Tests for the AES-256-GCM cipher envelope.
"""

import base64
import os

import pytest

from broker_chat.crypto.envelope import NONCE_SIZE, TAG_SIZE, decrypt_envelope, encrypt_envelope
from broker_chat.crypto.primitives import CryptoError
from broker_chat.models import CipherEnvelope, RecipientIdentity

SECRET = os.urandom(32)


def _flip_bit(b64_value: str, index: int) -> str:
    raw = bytearray(base64.b64decode(b64_value))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


@pytest.mark.parametrize(
    "plaintext",
    ["hello", "", "unicode: héllo 👋 世界", "x" * 10_000],
)
def test_round_trip(plaintext):
    envelope = encrypt_envelope(plaintext, SECRET, "s1")
    assert decrypt_envelope(envelope, SECRET) == plaintext


def test_envelope_fields():
    recipients = [RecipientIdentity(uaid="uaid:alice"), RecipientIdentity(email="bob@example.com")]
    envelope = encrypt_envelope("hello", SECRET, "s1", recipients=recipients, revision=3)

    assert envelope.algorithm == "aes-256-gcm"
    assert len(base64.b64decode(envelope.nonce)) == NONCE_SIZE
    assert len(base64.b64decode(envelope.ciphertext)) == len("hello") + TAG_SIZE
    assert base64.b64decode(envelope.associated_data) == b"s1"
    assert envelope.key_locator.session_id == "s1"
    assert envelope.key_locator.revision == 3
    assert [r.uaid for r in envelope.recipients] == ["uaid:alice", None]
    assert all(r.encrypted_share == "" for r in envelope.recipients)


def test_wire_format_is_camel_case():
    envelope = encrypt_envelope("hello", SECRET, "s1", recipients=[RecipientIdentity(uaid="u1")])
    wire = envelope.to_wire()

    assert set(wire) >= {"algorithm", "ciphertext", "nonce", "associatedData", "keyLocator", "recipients"}
    assert wire["keyLocator"] == {"sessionId": "s1", "revision": 1}
    assert wire["recipients"] == [{"uaid": "u1", "encryptedShare": ""}]

    # And back again
    assert decrypt_envelope(CipherEnvelope.model_validate(wire), SECRET) == "hello"


def test_nonce_uniqueness():
    """Same plaintext, same key: two distinct envelopes, both decryptable"""
    first = encrypt_envelope("same message", SECRET, "s1")
    second = encrypt_envelope("same message", SECRET, "s1")

    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext
    assert decrypt_envelope(first, SECRET) == "same message"
    assert decrypt_envelope(second, SECRET) == "same message"


def test_tamper_detection_every_byte():
    """Flipping a bit anywhere in ciphertext or tag breaks authentication"""
    envelope = encrypt_envelope("attack at dawn", SECRET, "s1")
    payload_length = len(base64.b64decode(envelope.ciphertext))

    for index in range(payload_length):
        tampered = envelope.model_copy(update={"ciphertext": _flip_bit(envelope.ciphertext, index)})
        with pytest.raises(CryptoError):
            decrypt_envelope(tampered, SECRET)


def test_tampered_nonce_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")
    tampered = envelope.model_copy(update={"nonce": _flip_bit(envelope.nonce, 0)})
    with pytest.raises(CryptoError):
        decrypt_envelope(tampered, SECRET)


def test_wrong_key_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")
    with pytest.raises(CryptoError):
        decrypt_envelope(envelope, os.urandom(32))


def test_associated_data_binds_session():
    """An envelope replayed with another session's AAD does not open"""
    envelope = encrypt_envelope("hello", SECRET, "s1")
    replayed = envelope.model_copy(
        update={"associated_data": base64.b64encode(b"s2").decode()}
    )
    with pytest.raises(CryptoError):
        decrypt_envelope(replayed, SECRET)


def test_explicit_associated_data():
    envelope = encrypt_envelope("hello", SECRET, "s1", associated_data="turn-7")
    assert base64.b64decode(envelope.associated_data) == b"turn-7"
    assert decrypt_envelope(envelope, SECRET) == "hello"


def test_malformed_base64_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")

    with pytest.raises(CryptoError):
        decrypt_envelope(envelope.model_copy(update={"ciphertext": "%%%"}), SECRET)
    with pytest.raises(CryptoError):
        decrypt_envelope(envelope.model_copy(update={"nonce": "%%%"}), SECRET)


def test_bad_nonce_length_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")
    short_nonce = base64.b64encode(os.urandom(8)).decode()
    with pytest.raises(CryptoError):
        decrypt_envelope(envelope.model_copy(update={"nonce": short_nonce}), SECRET)


def test_truncated_payload_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")
    truncated = base64.b64encode(os.urandom(TAG_SIZE - 1)).decode()
    with pytest.raises(CryptoError):
        decrypt_envelope(envelope.model_copy(update={"ciphertext": truncated}), SECRET)


def test_unknown_algorithm_fails():
    envelope = encrypt_envelope("hello", SECRET, "s1")
    with pytest.raises(CryptoError):
        decrypt_envelope(envelope.model_copy(update={"algorithm": "chacha20-poly1305"}), SECRET)
