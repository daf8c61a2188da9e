"""
Per-client registry of conversation contexts.

Keeps the shared secret for each established session in memory so that
later, independent history fetches can decrypt without repeating the
handshake. Nothing is evicted automatically; callers remove a session's
contexts when they end it.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from ..crypto.primitives import KeyInput, normalize_shared_secret
from ..errors import ConfigurationError
from ..models import RecipientIdentity


@dataclass
class ConversationContext:
    """
    Decryption context for one side of one session.

    Attributes:
        session_id: Broker session id
        shared_secret: 32-byte session key
        identity: Which party this context belongs to, if known
    """
    session_id: str
    shared_secret: bytes
    identity: Optional[RecipientIdentity] = None

    def __repr__(self) -> str:
        return f"ConversationContext(session_id={self.session_id!r}, identity={self.identity!r})"


def _identities_match(a: Optional[RecipientIdentity], b: Optional[RecipientIdentity]) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return a.matches(b)


class ConversationContextRegistry:
    """
    Session id -> list of contexts, one per local identity.

    A client that plays both roles of the same session (common in tests and
    demos) keeps one context per identity.
    """

    def __init__(self):
        self._contexts: Dict[str, List[ConversationContext]] = {}

    def register(
        self,
        session_id: str,
        shared_secret: KeyInput,
        identity: Optional[RecipientIdentity] = None,
    ) -> ConversationContext:
        """
        Store a context, replacing an existing one for the same identity.

        Returns:
            The stored context
        """
        if not session_id or not session_id.strip():
            raise ConfigurationError("session_id is required to register a conversation context")
        context = ConversationContext(
            session_id=session_id,
            shared_secret=normalize_shared_secret(shared_secret),
            identity=identity.identity_only() if identity is not None else None,
        )
        entries = self._contexts.setdefault(session_id, [])
        for index, existing in enumerate(entries):
            if _identities_match(existing.identity, context.identity):
                entries[index] = context
                break
        else:
            entries.append(context)
        return context

    def get(self, session_id: str) -> List[ConversationContext]:
        """All contexts registered for a session (empty list if none)."""
        return list(self._contexts.get(session_id, []))

    def resolve(
        self,
        session_id: str,
        identity: Optional[RecipientIdentity] = None,
    ) -> Optional[ConversationContext]:
        """
        Pick the context to decrypt with: the one matching `identity`,
        otherwise the first registered for the session.
        """
        entries = self._contexts.get(session_id)
        if not entries:
            return None
        if identity is not None:
            for context in entries:
                if _identities_match(context.identity, identity):
                    return context
        return entries[0]

    def remove(self, session_id: str) -> bool:
        """Drop every context for a session. Returns True if any existed."""
        return self._contexts.pop(session_id, None) is not None

    def sessions(self) -> List[str]:
        return list(self._contexts.keys())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)
