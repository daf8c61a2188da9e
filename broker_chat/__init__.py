"""
End-to-end encrypted two-party chat over a registry broker.

The broker relays every message, so both parties agree on a session key
through an ephemeral secp256k1 handshake and exchange AES-256-GCM cipher
envelopes the broker cannot read. Sessions fall back to plaintext when
encryption is unavailable, unless the caller requires it.
"""

from .client import (
    ConversationHandle,
    EncryptedConversation,
    EncryptionPreference,
    PlaintextConversation,
    RegistryBrokerClient,
)
from .config import ClientSettings, EncryptionKeyOptions
from .errors import (
    BrokerChatError,
    BrokerError,
    BrokerParseError,
    ConfigurationError,
    EncryptionUnavailableError,
    HandshakeAbortedError,
    HandshakeError,
    HandshakeTimeoutError,
    OperationAbortedError,
)

__version__ = "0.1.0"

__all__ = [
    'RegistryBrokerClient',
    'ClientSettings',
    'EncryptionKeyOptions',
    'ConversationHandle',
    'EncryptedConversation',
    'PlaintextConversation',
    'EncryptionPreference',
    'BrokerChatError',
    'BrokerError',
    'BrokerParseError',
    'ConfigurationError',
    'EncryptionUnavailableError',
    'HandshakeAbortedError',
    'HandshakeError',
    'HandshakeTimeoutError',
    'OperationAbortedError'
]
