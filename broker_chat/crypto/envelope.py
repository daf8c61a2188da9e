"""
Envelope Cipher

Seals one UTF-8 message into a self-describing AES-256-GCM envelope keyed
by the session's shared secret, and opens it again. The associated data
defaults to the session id, so an envelope cannot be replayed into a
different session.
"""

import os
from typing import Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..models import CipherEnvelope, CipherEnvelopeRecipient, KeyLocator, RecipientIdentity
from .primitives import (
    CryptoError,
    KeyInput,
    b64decode,
    b64encode,
    normalize_shared_secret,
)

ALGORITHM = "aes-256-gcm"
NONCE_SIZE = 12
TAG_SIZE = 16


def encrypt_envelope(
    plaintext: str,
    shared_secret: KeyInput,
    session_id: str,
    recipients: Iterable[RecipientIdentity] = (),
    associated_data: Optional[str] = None,
    revision: int = 1,
) -> CipherEnvelope:
    """
    Encrypt a message using AES-256-GCM.

    Args:
        plaintext: Message text
        shared_secret: 32-byte session key (bytes, hex or base64)
        session_id: Session the envelope belongs to
        recipients: Identities recorded on the envelope for bookkeeping
        associated_data: Extra authenticated text, defaults to session_id
        revision: Key revision recorded in the key locator

    Returns:
        CipherEnvelope with a fresh random nonce
    """
    key = normalize_shared_secret(shared_secret)
    nonce = os.urandom(NONCE_SIZE)
    aad_source = associated_data if associated_data is not None else session_id
    aad = aad_source.encode("utf-8") if aad_source else None

    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), aad)

    return CipherEnvelope(
        algorithm=ALGORITHM,
        ciphertext=b64encode(sealed),
        nonce=b64encode(nonce),
        associated_data=b64encode(aad) if aad else None,
        key_locator=KeyLocator(session_id=session_id, revision=revision),
        recipients=[
            CipherEnvelopeRecipient(**recipient.identity_only().model_dump(), encrypted_share="")
            for recipient in recipients
        ],
    )


def decrypt_envelope(envelope: CipherEnvelope, shared_secret: KeyInput) -> str:
    """
    Decrypt a message using AES-256-GCM.

    Args:
        envelope: Envelope produced by encrypt_envelope (or a peer)
        shared_secret: 32-byte session key

    Returns:
        Decrypted plaintext

    Raises:
        CryptoError: If the envelope is malformed or fails authentication
    """
    if envelope.algorithm and envelope.algorithm.lower() != ALGORITHM:
        raise CryptoError(f"Unsupported envelope algorithm: {envelope.algorithm}")

    key = normalize_shared_secret(shared_secret)
    payload = b64decode(envelope.ciphertext, "ciphertext")
    nonce = b64decode(envelope.nonce, "nonce")
    aad = b64decode(envelope.associated_data, "associatedData") if envelope.associated_data else None

    if len(nonce) != NONCE_SIZE:
        raise CryptoError(f"Nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    if len(payload) < TAG_SIZE:
        raise CryptoError("Ciphertext too short")

    try:
        plaintext = AESGCM(key).decrypt(nonce, payload, aad)
    except InvalidTag as e:
        raise CryptoError("Decryption failed: authentication tag mismatch") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError("Decrypted payload is not valid UTF-8") from e
