"""
Wire models for the registry broker's chat and encryption endpoints.

Fields are snake_case in Python and camelCase on the wire. Unknown fields
are kept so that newer broker responses still round-trip.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

HANDSHAKE_PENDING = "pending"
HANDSHAKE_COMPLETE = "complete"


class WireModel(BaseModel):
    """Base model: camelCase aliases, accepts either naming on input"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class RecipientIdentity(WireModel):
    """
    Who a party is, for bookkeeping only.

    Never used to look up keys; at least one field must be set for the
    identity to be usable.
    """

    uaid: Optional[str] = None
    ledger_account_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None

    def is_usable(self) -> bool:
        return bool(self.uaid or self.ledger_account_id or self.user_id or self.email)

    def matches(self, other: Optional["RecipientIdentity"]) -> bool:
        """True if any populated field identifies the same party."""
        if other is None:
            return False
        if self.uaid and other.uaid and self.uaid.lower() == other.uaid.lower():
            return True
        if (
            self.ledger_account_id
            and other.ledger_account_id
            and self.ledger_account_id.lower() == other.ledger_account_id.lower()
        ):
            return True
        if self.user_id and other.user_id and self.user_id == other.user_id:
            return True
        if self.email and other.email and self.email.lower() == other.email.lower():
            return True
        return False

    def identity_only(self) -> "RecipientIdentity":
        """Copy holding just the four identity fields."""
        return RecipientIdentity(
            uaid=self.uaid,
            ledger_account_id=self.ledger_account_id,
            user_id=self.user_id,
            email=self.email,
        )


class CipherEnvelopeRecipient(RecipientIdentity):
    # Placeholder; one shared secret per session, nothing is wrapped per recipient
    encrypted_share: str = ""


class KeyLocator(WireModel):
    session_id: str
    revision: int = 1


class CipherEnvelope(WireModel):
    """
    One authenticated-encrypted message.

    ciphertext is base64(ciphertext || 16-byte tag), nonce is base64 of
    12 bytes, associated_data is base64 of the AAD bytes when present.
    """

    algorithm: str = "aes-256-gcm"
    ciphertext: str
    nonce: str
    associated_data: Optional[str] = None
    key_locator: KeyLocator
    recipients: List[CipherEnvelopeRecipient] = Field(default_factory=list)


class HandshakeParticipant(WireModel):
    ephemeral_public_key: Optional[str] = None
    key_type: Optional[str] = None
    uaid: Optional[str] = None
    user_id: Optional[str] = None
    ledger_account_id: Optional[str] = None
    long_term_public_key: Optional[str] = None
    signature: Optional[str] = None


class EncryptionHandshakeRecord(WireModel):
    """Broker-held handshake state; complete only once both keys are posted."""

    status: str = HANDSHAKE_PENDING
    requester: Optional[HandshakeParticipant] = None
    responder: Optional[HandshakeParticipant] = None

    @property
    def is_complete(self) -> bool:
        return self.status == HANDSHAKE_COMPLETE

    def participant(self, role: str) -> Optional[HandshakeParticipant]:
        return self.requester if role == "requester" else self.responder


class SessionEncryptionSummary(WireModel):
    enabled: bool = False
    requester: Optional[RecipientIdentity] = None
    responder: Optional[RecipientIdentity] = None
    handshake: Optional[EncryptionHandshakeRecord] = None


class CreateSessionResponse(WireModel):
    session_id: str
    encryption: Optional[SessionEncryptionSummary] = None


class EncryptionStatusResponse(WireModel):
    session_id: Optional[str] = None
    encryption: Optional[SessionEncryptionSummary] = None


class EncryptionHandshakeResponse(WireModel):
    handshake: EncryptionHandshakeRecord


class SendMessageResponse(WireModel):
    session_id: Optional[str] = None
    message: Optional[str] = None
    content: Optional[str] = None


class ChatHistoryEntry(WireModel):
    """
    One relayed turn.

    cipher_envelope is kept exactly as the broker returned it and parsed per
    entry by parse_envelope(), so one malformed envelope cannot fail the
    whole snapshot.
    """

    message_id: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[str] = None
    cipher_envelope: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None

    def parse_envelope(self) -> Optional[CipherEnvelope]:
        """
        The entry's envelope as a CipherEnvelope, or None if it has none.

        Raises:
            pydantic.ValidationError: If the envelope is malformed
        """
        if self.cipher_envelope is None or isinstance(self.cipher_envelope, CipherEnvelope):
            return self.cipher_envelope
        return CipherEnvelope.model_validate(self.cipher_envelope)


class ChatHistorySnapshot(WireModel):
    session_id: Optional[str] = None
    history: List[ChatHistoryEntry] = Field(default_factory=list)


class ChatHistoryCompactionResponse(WireModel):
    session_id: Optional[str] = None
    preserved_entries: Optional[int] = None


class RegisterEncryptionKeyResponse(WireModel):
    id: Optional[str] = None
    key_type: Optional[str] = None
    public_key: Optional[str] = None


@dataclass
class DecryptedHistoryEntry:
    """A history entry paired with its readable text, or None if it could not be opened."""
    entry: ChatHistoryEntry
    plaintext: Optional[str]


@dataclass
class DecryptedHistorySnapshot:
    snapshot: ChatHistorySnapshot
    decrypted_history: Optional[List[DecryptedHistoryEntry]] = None

    @property
    def history(self) -> List[ChatHistoryEntry]:
        return self.snapshot.history
