"""
Cryptographic module for broker-relayed encrypted chat.

Implements:
- Ephemeral secp256k1 key pairs and ECDH shared-secret derivation
- AES-256-GCM cipher envelopes bound to a session id
- The requester/responder handshake that publishes keys through the broker
"""

from .primitives import (
    EphemeralKeyPair,
    generate_ephemeral_keypair,
    derive_public_key,
    derive_shared_secret,
    normalize_shared_secret,
    CryptoError
)
from .envelope import encrypt_envelope, decrypt_envelope
from .handshake import HandshakeCoordinator, HandshakeResult, HandshakeRole, abortable_sleep

__all__ = [
    'EphemeralKeyPair',
    'generate_ephemeral_keypair',
    'derive_public_key',
    'derive_shared_secret',
    'normalize_shared_secret',
    'encrypt_envelope',
    'decrypt_envelope',
    'HandshakeCoordinator',
    'HandshakeResult',
    'HandshakeRole',
    'abortable_sleep',
    'CryptoError'
]
