"""
Conversation handles returned by the session manager.

Both variants share one contract: send(), decrypt_history_entry() and
fetch_history(). Which variant a caller gets is decided once, when the
session is established.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..crypto.envelope import decrypt_envelope, encrypt_envelope
from ..crypto.primitives import CryptoError, KeyInput
from ..errors import ConfigurationError
from ..models import (
    ChatHistoryEntry,
    DecryptedHistoryEntry,
    RecipientIdentity,
    SendMessageResponse,
    SessionEncryptionSummary,
)

logger = logging.getLogger(__name__)

PLAINTEXT = "plaintext"
ENCRYPTED = "encrypted"
CIPHERTEXT_PLACEHOLDER = "[ciphertext omitted]"


def open_history_entry(entry: ChatHistoryEntry, shared_secret: KeyInput) -> Optional[str]:
    """
    Readable text for one history entry.

    Entries without an envelope are returned as-is (the broker relays agent
    replies unencrypted). Envelopes that are malformed or fail to open give
    None instead of raising, since one history stream can mix entries from
    several handshakes.
    """
    if entry.cipher_envelope is None:
        return entry.content
    try:
        return decrypt_envelope(entry.parse_envelope(), shared_secret)
    except (ValidationError, CryptoError) as e:
        logger.debug("Could not decrypt history entry %s: %s", entry.message_id, e)
        return None


class ConversationHandle(ABC):
    """
    Uniform handle on an established chat session.

    Attributes:
        session_id: Broker session id
        mode: "plaintext" or "encrypted"
        summary: Encryption summary the broker reported, if any
    """

    mode: str = ""

    def __init__(
        self,
        broker,
        session_id: str,
        summary: Optional[SessionEncryptionSummary] = None,
        default_auth: Optional[Dict[str, Any]] = None,
    ):
        self.broker = broker
        self.session_id = session_id
        self.summary = summary
        self.default_auth = default_auth

    @property
    def encrypted(self) -> bool:
        return self.mode == ENCRYPTED

    @abstractmethod
    async def send(
        self,
        message: Optional[str] = None,
        plaintext: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        streaming: Optional[bool] = None,
        recipients: Optional[Sequence[RecipientIdentity]] = None,
    ) -> SendMessageResponse:
        """Send one chat turn through the broker."""

    @abstractmethod
    def decrypt_history_entry(self, entry: ChatHistoryEntry) -> Optional[str]:
        """Readable text of a history entry, or None if it cannot be decrypted."""

    async def fetch_history(
        self,
        decrypt: Optional[bool] = None,
        shared_secret: Optional[KeyInput] = None,
        identity: Optional[RecipientIdentity] = None,
    ) -> List[DecryptedHistoryEntry]:
        """
        Fetch the session history with each entry's readable text.

        The options are passed to fetch_history_snapshot. When the snapshot
        comes back decrypted its entries are used as-is, otherwise each
        entry goes through decrypt_history_entry().
        """
        snapshot = await self.broker.fetch_history_snapshot(
            self.session_id,
            decrypt=decrypt,
            shared_secret=shared_secret,
            identity=identity,
        )
        if snapshot.decrypted_history is not None:
            return snapshot.decrypted_history
        return [
            DecryptedHistoryEntry(entry=entry, plaintext=self.decrypt_history_entry(entry))
            for entry in snapshot.history
        ]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(session_id={self.session_id!r}, mode={self.mode!r})"


class PlaintextConversation(ConversationHandle):
    """Session without end-to-end encryption; messages go out verbatim."""

    mode = PLAINTEXT

    def __init__(
        self,
        broker,
        session_id: str,
        summary: Optional[SessionEncryptionSummary] = None,
        default_auth: Optional[Dict[str, Any]] = None,
        uaid: Optional[str] = None,
        agent_url: Optional[str] = None,
    ):
        super().__init__(broker, session_id, summary, default_auth)
        self.uaid = uaid.strip() if uaid else None
        self.agent_url = agent_url.strip() if agent_url else None

    async def send(
        self,
        message: Optional[str] = None,
        plaintext: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        streaming: Optional[bool] = None,
        recipients: Optional[Sequence[RecipientIdentity]] = None,
    ) -> SendMessageResponse:
        text = message if message is not None else plaintext
        if text is None or not text.strip():
            raise ConfigurationError("message text is required for chat messages")
        return await self.broker.send_message(
            text,
            session_id=self.session_id,
            uaid=self.uaid,
            agent_url=self.agent_url,
            auth=auth or self.default_auth,
            streaming=streaming,
        )

    def decrypt_history_entry(self, entry: ChatHistoryEntry) -> Optional[str]:
        return entry.content


class EncryptedConversation(ConversationHandle):
    """
    Session protected by a shared secret from the ephemeral-key handshake.

    Every send seals `plaintext` into a fresh cipher envelope; the broker
    only sees the placeholder `message` text.
    """

    mode = ENCRYPTED

    def __init__(
        self,
        broker,
        session_id: str,
        shared_secret: bytes,
        summary: SessionEncryptionSummary,
        recipients: Sequence[RecipientIdentity],
        identity: Optional[RecipientIdentity] = None,
        default_auth: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(broker, session_id, summary, default_auth)
        self._shared_secret = shared_secret
        self.recipients = list(recipients)
        self.identity = identity

        # Broker-side addressing, same precedence the broker uses for encrypted sessions
        self.uaid = (
            (summary.requester.uaid if summary.requester else None)
            or (summary.responder.uaid if summary.responder else None)
            or (identity.uaid if identity else None)
        )

    async def send(
        self,
        message: Optional[str] = None,
        plaintext: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        streaming: Optional[bool] = None,
        recipients: Optional[Sequence[RecipientIdentity]] = None,
    ) -> SendMessageResponse:
        if plaintext is None or not plaintext.strip():
            raise ConfigurationError("plaintext is required for encrypted chat messages")
        targets = list(recipients) if recipients is not None else self.recipients
        if not targets:
            raise ConfigurationError("recipients are required for encrypted chat payloads")

        envelope = encrypt_envelope(
            plaintext,
            self._shared_secret,
            self.session_id,
            recipients=targets,
        )
        return await self.broker.send_message(
            message if message is not None else CIPHERTEXT_PLACEHOLDER,
            session_id=self.session_id,
            uaid=self.uaid,
            auth=auth or self.default_auth,
            streaming=streaming,
            cipher_envelope=envelope,
        )

    def decrypt_history_entry(self, entry: ChatHistoryEntry) -> Optional[str]:
        return open_history_entry(entry, self._shared_secret)
