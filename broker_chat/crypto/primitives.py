"""
Cryptographic Primitives for Broker Chat Sessions

Ephemeral secp256k1 key pairs, ECDH shared-secret derivation and the
codecs used to move key material over the broker as hex or base64 text.
"""

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Union

import coincurve
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import BrokerChatError, ConfigurationError

KEY_TYPE = "secp256k1"
PRIVATE_KEY_SIZE = 32
PUBLIC_KEY_SIZE = 33
SHARED_SECRET_SIZE = 32

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")

KeyInput = Union[bytes, bytearray, str]


class CryptoError(BrokerChatError):
    """Base exception for cryptographic errors"""
    pass


@dataclass(frozen=True)
class EphemeralKeyPair:
    """
    Key pair generated for a single handshake and discarded afterwards.

    Attributes:
        private_key: 32-byte secret scalar
        public_key: 33-byte compressed curve point
    """
    private_key: bytes
    public_key: bytes

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    @property
    def private_key_hex(self) -> str:
        return self.private_key.hex()

    def __repr__(self) -> str:
        return f"EphemeralKeyPair(public_key={self.public_key_hex!r})"


def hex_to_bytes(value: str, label: str = "value") -> bytes:
    """
    Decode hex text, accepting an optional 0x prefix.

    Raises:
        ConfigurationError: If the text is not an even-length hex string
    """
    normalized = value.strip()
    if normalized.startswith(("0x", "0X")):
        normalized = normalized[2:]
    if not normalized or not _HEX_RE.match(normalized) or len(normalized) % 2 != 0:
        raise ConfigurationError(f"Expected hex-encoded {label}")
    return bytes.fromhex(normalized)


def _key_bytes(value: KeyInput, size: int, label: str) -> bytes:
    if isinstance(value, str):
        raw = hex_to_bytes(value, label)
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raise ConfigurationError(f"Unsupported {label} type: {type(value).__name__}")
    if len(raw) != size:
        raise ConfigurationError(f"{label} must be {size} bytes, got {len(raw)}")
    return raw


def load_private_key(private_key: KeyInput) -> ec.EllipticCurvePrivateKey:
    """Load a raw 32-byte secp256k1 scalar (bytes or hex)."""
    raw = _key_bytes(private_key, PRIVATE_KEY_SIZE, "private key")
    try:
        return ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())
    except ValueError as e:
        raise ConfigurationError(f"Invalid private key: {e}") from e


def load_public_key(public_key: KeyInput) -> ec.EllipticCurvePublicKey:
    """Load a 33-byte compressed secp256k1 point (bytes or hex)."""
    raw = _key_bytes(public_key, PUBLIC_KEY_SIZE, "public key")
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid public key: {e}") from e


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize a public key as a compressed point"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )


def serialize_private_key(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    """Serialize a private key as its raw 32-byte big-endian scalar"""
    return private_key.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")


def generate_ephemeral_keypair() -> EphemeralKeyPair:
    """
    Generate a fresh secp256k1 key pair for one handshake.

    The scalar comes from the OpenSSL CSPRNG; nothing is persisted.

    Returns:
        EphemeralKeyPair with raw private scalar and compressed public point
    """
    private_key = ec.generate_private_key(ec.SECP256K1())
    return EphemeralKeyPair(
        private_key=serialize_private_key(private_key),
        public_key=serialize_public_key(private_key.public_key()),
    )


def derive_public_key(private_key: KeyInput) -> str:
    """
    Recompute the compressed public key (hex) for a private key.

    Args:
        private_key: 32-byte scalar as bytes or hex

    Returns:
        66-character hex string
    """
    return serialize_public_key(load_private_key(private_key).public_key()).hex()


def derive_shared_secret(private_key: KeyInput, peer_public_key: KeyInput) -> bytes:
    """
    Perform ECDH and hash the shared point into a symmetric key.

    The secret is SHA-256 of the 33-byte compressed shared point (parity
    byte followed by x), computed by libsecp256k1. Both keys are validated
    first, so malformed input fails here rather than after a round trip
    to the broker.

    Args:
        private_key: Our ephemeral private key (bytes or hex)
        peer_public_key: The other party's compressed public key (bytes or hex)

    Returns:
        32-byte shared secret, identical on both sides
    """
    local = _key_bytes(private_key, PRIVATE_KEY_SIZE, "private key")
    load_private_key(local)
    peer = serialize_public_key(load_public_key(peer_public_key))
    return coincurve.PrivateKey(local).ecdh(peer)


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str, label: str = "value") -> bytes:
    """
    Strict base64 decode.

    Raises:
        CryptoError: If the text is not valid base64
    """
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Malformed base64 in {label}") from e


def normalize_shared_secret(secret: KeyInput) -> bytes:
    """
    Coerce a shared secret given as bytes, hex or base64 text into 32 bytes.

    Raises:
        ConfigurationError: If the secret is empty, undecodable or the wrong size
    """
    if isinstance(secret, (bytes, bytearray)):
        raw = bytes(secret)
    elif isinstance(secret, str):
        trimmed = secret.strip()
        if not trimmed:
            raise ConfigurationError("shared secret string cannot be empty")
        candidate = trimmed[2:] if trimmed.startswith(("0x", "0X")) else trimmed
        if _HEX_RE.match(candidate) and len(candidate) % 2 == 0:
            raw = bytes.fromhex(candidate)
        else:
            try:
                raw = base64.b64decode(trimmed, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError("shared secret is neither hex nor base64") from e
    else:
        raise ConfigurationError("Unsupported shared secret input")

    if len(raw) != SHARED_SECRET_SIZE:
        raise ConfigurationError(
            f"shared secret must be {SHARED_SECRET_SIZE} bytes, got {len(raw)}"
        )
    return raw
