"""
Ephemeral Key Handshake over the Registry Broker

The two parties never talk directly. Each one posts its ephemeral public
key to the broker's handshake record for the session, then polls the
encryption status until the record is complete and the other side's key
is present. The broker record is the only source of truth, so the order
in which the two keys arrive does not matter.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from ..errors import (
    ConfigurationError,
    EncryptionUnavailableError,
    HandshakeAbortedError,
    HandshakeError,
    HandshakeTimeoutError,
    OperationAbortedError,
)
from ..models import EncryptionHandshakeRecord, RecipientIdentity, SessionEncryptionSummary
from .primitives import KEY_TYPE, EphemeralKeyPair, derive_shared_secret, generate_ephemeral_keypair

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 1.0


class HandshakeRole(str, Enum):
    REQUESTER = "requester"
    RESPONDER = "responder"

    @property
    def peer(self) -> "HandshakeRole":
        if self is HandshakeRole.REQUESTER:
            return HandshakeRole.RESPONDER
        return HandshakeRole.REQUESTER


@dataclass
class HandshakeResult:
    """
    Outcome of a completed handshake.

    Attributes:
        session_id: Broker session the secret belongs to
        role: Role this side played
        summary: Encryption summary observed at completion
        record: Completed handshake record
        shared_secret: 32-byte symmetric key (never transmitted)
        identity: This side's identity from the summary, if any
    """
    session_id: str
    role: HandshakeRole
    summary: SessionEncryptionSummary
    record: EncryptionHandshakeRecord
    shared_secret: bytes
    identity: Optional[RecipientIdentity] = None

    def __repr__(self) -> str:
        return (
            f"HandshakeResult(session_id={self.session_id!r}, role={self.role.value!r}, "
            f"status={self.record.status!r})"
        )


async def abortable_sleep(seconds: float, abort: Optional[asyncio.Event] = None) -> None:
    """
    Sleep for `seconds`, returning early with an error if `abort` is set.

    Raises:
        OperationAbortedError: If the abort event is set before or during the wait
    """
    if abort is None:
        await asyncio.sleep(seconds)
        return
    if abort.is_set():
        raise OperationAbortedError()
    try:
        await asyncio.wait_for(abort.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise OperationAbortedError()


class HandshakeCoordinator:
    """
    Runs the requester or responder side of the key exchange for a session.

    `broker` needs `get_encryption_status(session_id)` and
    `submit_encryption_handshake(session_id, ...)`; RegistryBrokerClient
    provides both.
    """

    def __init__(
        self,
        broker,
        timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        if timeout is None or timeout <= 0:
            raise ConfigurationError("handshake timeout must be greater than zero")
        if poll_interval is None or poll_interval <= 0:
            raise ConfigurationError("poll interval must be greater than zero")
        self.broker = broker
        self.timeout = timeout
        self.poll_interval = poll_interval

    async def fetch_enabled_summary(self, session_id: str) -> SessionEncryptionSummary:
        """
        Read the session's encryption summary and insist that it is enabled.

        Raises:
            EncryptionUnavailableError: If the broker reports encryption disabled
        """
        status = await self.broker.get_encryption_status(session_id)
        summary = status.encryption
        if summary is None or not summary.enabled:
            raise EncryptionUnavailableError(session_id, summary)
        return summary

    async def run(
        self,
        role: HandshakeRole,
        session_id: str,
        summary: Optional[SessionEncryptionSummary] = None,
        uaid: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> HandshakeResult:
        """
        Run one side of the handshake.

        Args:
            role: Which track to run
            session_id: Broker session id
            summary: Summary from session creation; required for the requester
            uaid: Identity to record on this side's handshake entry
            abort: Event that cancels the wait when set

        Returns:
            HandshakeResult holding the derived shared secret
        """
        role = HandshakeRole(role)
        if role is HandshakeRole.REQUESTER:
            if summary is None:
                raise ConfigurationError("requester handshake needs the session's encryption summary")
            return await self.run_requester(session_id, summary, uaid, abort)
        return await self.run_responder(session_id, uaid, abort)

    async def run_requester(
        self,
        session_id: str,
        summary: SessionEncryptionSummary,
        uaid: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> HandshakeResult:
        """Requester track: the summary comes from session creation."""
        if not summary.enabled:
            raise EncryptionUnavailableError(session_id, summary)
        return await self._exchange(session_id, HandshakeRole.REQUESTER, summary, uaid, abort)

    async def run_responder(
        self,
        session_id: str,
        uaid: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> HandshakeResult:
        """Responder track: fetch the summary first, fail fast if disabled."""
        self._check_abort(session_id, abort, None)
        summary = await self.fetch_enabled_summary(session_id)
        return await self._exchange(session_id, HandshakeRole.RESPONDER, summary, uaid, abort)

    async def _exchange(
        self,
        session_id: str,
        role: HandshakeRole,
        summary: SessionEncryptionSummary,
        uaid: Optional[str],
        abort: Optional[asyncio.Event],
    ) -> HandshakeResult:
        key_pair = generate_ephemeral_keypair()
        own_identity = summary.requester if role is HandshakeRole.REQUESTER else summary.responder

        self._check_abort(session_id, abort, summary)
        await self.broker.submit_encryption_handshake(
            session_id,
            role=role.value,
            key_type=KEY_TYPE,
            ephemeral_public_key=key_pair.public_key_hex,
            uaid=uaid or (own_identity.uaid if own_identity else None),
        )
        logger.debug("Submitted %s key for session %s", role.value, session_id)

        summary, record = await self.wait_for_completion(session_id, role, abort, summary)
        return self._finish(session_id, role, key_pair, summary, record)

    async def wait_for_completion(
        self,
        session_id: str,
        role: HandshakeRole,
        abort: Optional[asyncio.Event] = None,
        last_summary: Optional[SessionEncryptionSummary] = None,
    ) -> Tuple[SessionEncryptionSummary, EncryptionHandshakeRecord]:
        """
        Poll the encryption status until the peer's key is published.

        Raises:
            HandshakeTimeoutError: If the deadline passes first
            HandshakeAbortedError: If `abort` is set while waiting
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        peer = role.peer.value
        attempt = 0

        while True:
            self._check_abort(session_id, abort, last_summary)
            attempt += 1
            status = await self.broker.get_encryption_status(session_id)
            summary = status.encryption
            if summary is not None:
                last_summary = summary
                record = summary.handshake
                if record is not None and record.is_complete:
                    participant = record.participant(peer)
                    if participant is not None and participant.ephemeral_public_key:
                        logger.debug(
                            "Handshake for session %s complete after %d poll(s)", session_id, attempt
                        )
                        return summary, record

            # At least one full interval passes before giving up
            if attempt > 1 and loop.time() >= deadline:
                raise HandshakeTimeoutError(session_id, self.timeout, last_summary)

            logger.debug(
                "Handshake for session %s pending (poll %d), waiting for %s key",
                session_id, attempt, peer,
            )
            try:
                await abortable_sleep(self.poll_interval, abort)
            except OperationAbortedError as e:
                raise HandshakeAbortedError(session_id, last_summary) from e

    def _finish(
        self,
        session_id: str,
        role: HandshakeRole,
        key_pair: EphemeralKeyPair,
        summary: SessionEncryptionSummary,
        record: EncryptionHandshakeRecord,
    ) -> HandshakeResult:
        participant = record.participant(role.peer.value)
        if participant is None or not participant.ephemeral_public_key:
            raise HandshakeError(f"{role.peer.value} key missing from completed handshake", session_id, summary)
        shared_secret = derive_shared_secret(key_pair.private_key, participant.ephemeral_public_key)
        identity = summary.requester if role is HandshakeRole.REQUESTER else summary.responder
        return HandshakeResult(
            session_id=session_id,
            role=role,
            summary=summary,
            record=record,
            shared_secret=shared_secret,
            identity=identity,
        )

    @staticmethod
    def _check_abort(
        session_id: str,
        abort: Optional[asyncio.Event],
        summary: Optional[SessionEncryptionSummary],
    ) -> None:
        if abort is not None and abort.is_set():
            raise HandshakeAbortedError(session_id, summary)
