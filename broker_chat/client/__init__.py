"""Broker transport, conversation handles and the session lifecycle."""

from .broker import RegistryBrokerClient
from .contexts import ConversationContext, ConversationContextRegistry
from .conversation import ConversationHandle, EncryptedConversation, PlaintextConversation
from .keys import EncryptionKeyMaterial
from .sessions import EncryptionPreference, SessionManager, build_recipients

__all__ = [
    'RegistryBrokerClient',
    'ConversationContext',
    'ConversationContextRegistry',
    'ConversationHandle',
    'EncryptedConversation',
    'PlaintextConversation',
    'EncryptionPreference',
    'SessionManager',
    'EncryptionKeyMaterial',
    'build_recipients'
]
