"""
Session lifecycle: create or join a broker chat session, run the key
handshake for the caller's role and hand back a conversation handle.

The encryption preference decides what happens when the broker says a
session cannot be encrypted:

- required: raise EncryptionUnavailableError
- preferred: fall back to a plaintext handle on the same session
- disabled: never attempt the handshake
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..crypto.handshake import HandshakeCoordinator, HandshakeResult
from ..errors import ConfigurationError, EncryptionUnavailableError
from ..models import RecipientIdentity, SessionEncryptionSummary
from .conversation import ConversationHandle, EncryptedConversation, PlaintextConversation

logger = logging.getLogger(__name__)


class EncryptionPreference(str, Enum):
    REQUIRED = "required"
    PREFERRED = "preferred"
    DISABLED = "disabled"


def _coerce_preference(value: Union[EncryptionPreference, str, None]) -> EncryptionPreference:
    if value is None:
        return EncryptionPreference.PREFERRED
    try:
        return EncryptionPreference(value)
    except ValueError as e:
        raise ConfigurationError(f"Unknown encryption preference: {value!r}") from e


def _is_agent_url(target: str) -> bool:
    return target.lower().startswith(("http://", "https://"))


def build_recipients(summary: SessionEncryptionSummary) -> List[RecipientIdentity]:
    """
    Identities recorded on every envelope of the session.

    Both parties' usable identities, or just the responder's uaid when
    neither qualifies. There is one shared secret per session, so this list
    is bookkeeping, not per-recipient key wrapping.
    """
    recipients = [
        candidate.identity_only()
        for candidate in (summary.requester, summary.responder)
        if candidate is not None and candidate.is_usable()
    ]
    if recipients:
        return recipients
    if summary.responder is not None and summary.responder.uaid:
        return [RecipientIdentity(uaid=summary.responder.uaid)]
    return []


class SessionManager:
    """
    Establishes conversations for a RegistryBrokerClient.

    Each call runs its own handshake with its own key pair, so several
    sessions can be established concurrently from one client.
    """

    def __init__(self, broker):
        self.broker = broker

    def _coordinator(
        self,
        handshake_timeout: Optional[float],
        poll_interval: Optional[float],
    ) -> HandshakeCoordinator:
        settings = self.broker.settings
        return HandshakeCoordinator(
            self.broker,
            timeout=handshake_timeout if handshake_timeout is not None else settings.handshake_timeout,
            poll_interval=poll_interval if poll_interval is not None else settings.poll_interval,
        )

    async def start_session(
        self,
        target: str,
        *,
        preference: Union[EncryptionPreference, str, None] = EncryptionPreference.PREFERRED,
        sender_uaid: Optional[str] = None,
        history_ttl_seconds: Optional[int] = None,
        auth: Optional[Dict[str, Any]] = None,
        handshake_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        on_session_created: Optional[Callable[[str], Any]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ConversationHandle:
        """
        Open a session with `target` and play the requester role.

        Args:
            target: Agent UAID, or an http(s) agent URL (always plaintext)
            preference: required / preferred / disabled
            sender_uaid: Our own UAID, recorded on the handshake
            history_ttl_seconds: Broker-side history retention
            auth: Agent auth config forwarded to the broker
            handshake_timeout: Seconds to wait for the responder's key
            poll_interval: Seconds between status polls
            on_session_created: Called with the session id as soon as it exists
            abort: Event that cancels the handshake wait when set

        Returns:
            EncryptedConversation, or PlaintextConversation per the preference

        Raises:
            EncryptionUnavailableError: Encryption unavailable and preference is required
            HandshakeTimeoutError: The responder never published its key
            HandshakeAbortedError: `abort` was set during the handshake
        """
        if not target or not target.strip():
            raise ConfigurationError("start_session requires a target uaid or agent URL")
        target = target.strip()
        preference = _coerce_preference(preference)
        coordinator = self._coordinator(handshake_timeout, poll_interval)

        if _is_agent_url(target):
            session = await self.broker.create_session(
                agent_url=target,
                auth=auth,
                history_ttl_seconds=history_ttl_seconds,
                sender_uaid=sender_uaid,
            )
            await self._notify(on_session_created, session.session_id)
            return PlaintextConversation(
                self.broker, session.session_id, session.encryption, auth, agent_url=target
            )

        requested = preference is not EncryptionPreference.DISABLED
        session = await self.broker.create_session(
            uaid=target,
            auth=auth,
            history_ttl_seconds=history_ttl_seconds,
            encryption_requested=requested,
            sender_uaid=sender_uaid,
        )
        await self._notify(on_session_created, session.session_id)

        if not requested:
            return PlaintextConversation(
                self.broker, session.session_id, session.encryption, auth, uaid=target
            )

        try:
            summary = session.encryption
            if summary is None or not summary.enabled:
                raise EncryptionUnavailableError(session.session_id, summary)
            result = await coordinator.run_requester(
                session.session_id, summary, uaid=sender_uaid, abort=abort
            )
        except EncryptionUnavailableError as e:
            if preference is EncryptionPreference.REQUIRED:
                raise
            logger.warning(
                "Encryption unavailable for session %s; continuing in plaintext", e.session_id
            )
            return PlaintextConversation(self.broker, e.session_id, e.summary, auth, uaid=target)

        return self._encrypted_handle(result, auth)

    async def accept_session(
        self,
        session_id: str,
        *,
        preference: Union[EncryptionPreference, str, None] = EncryptionPreference.PREFERRED,
        responder_uaid: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        handshake_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ConversationHandle:
        """
        Join an existing session and play the responder role.

        Same preference handling and errors as start_session.
        """
        if not session_id or not session_id.strip():
            raise ConfigurationError("accept_session requires a session_id")
        preference = _coerce_preference(preference)
        coordinator = self._coordinator(handshake_timeout, poll_interval)

        if preference is EncryptionPreference.DISABLED:
            return PlaintextConversation(self.broker, session_id, None, auth, uaid=responder_uaid)

        try:
            result = await coordinator.run_responder(session_id, uaid=responder_uaid, abort=abort)
        except EncryptionUnavailableError as e:
            if preference is EncryptionPreference.REQUIRED:
                raise
            logger.warning(
                "Encryption unavailable for session %s; continuing in plaintext", session_id
            )
            return PlaintextConversation(self.broker, session_id, e.summary, auth, uaid=responder_uaid)

        return self._encrypted_handle(result, auth)

    def _encrypted_handle(
        self,
        result: HandshakeResult,
        auth: Optional[Dict[str, Any]],
    ) -> EncryptedConversation:
        self.broker.register_conversation_context(
            result.session_id, result.shared_secret, result.identity
        )
        logger.info("Encrypted session %s established as %s", result.session_id, result.role.value)
        return EncryptedConversation(
            self.broker,
            result.session_id,
            result.shared_secret,
            result.summary,
            build_recipients(result.summary),
            identity=result.identity,
            default_auth=auth,
        )

    @staticmethod
    async def _notify(callback: Optional[Callable[[str], Any]], session_id: str) -> None:
        if callback is None:
            return
        outcome = callback(session_id)
        if inspect.isawaitable(outcome):
            await outcome
