"""
Tests for the conversation context registry.
"""

import pytest

from broker_chat.client.contexts import ConversationContextRegistry
from broker_chat.errors import ConfigurationError
from broker_chat.models import RecipientIdentity

SECRET_A = bytes(range(32))
SECRET_B = bytes(range(32, 64))


def test_register_and_resolve():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A, RecipientIdentity(uaid="uaid:alice"))

    context = registry.resolve("s1")
    assert context.shared_secret == SECRET_A
    assert context.identity.uaid == "uaid:alice"
    assert "s1" in registry
    assert len(registry) == 1


def test_resolve_unknown_session():
    assert ConversationContextRegistry().resolve("nope") is None


def test_secret_forms_are_normalized():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A.hex())
    assert registry.resolve("s1").shared_secret == SECRET_A


def test_one_context_per_identity():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A, RecipientIdentity(uaid="uaid:alice"))
    registry.register("s1", SECRET_B, RecipientIdentity(uaid="uaid:bob"))
    # Same identity, different case: replaces rather than appends
    registry.register("s1", SECRET_B, RecipientIdentity(uaid="UAID:ALICE"))

    contexts = registry.get("s1")
    assert len(contexts) == 2
    assert registry.resolve("s1", RecipientIdentity(uaid="uaid:alice")).shared_secret == SECRET_B
    assert registry.resolve("s1", RecipientIdentity(uaid="uaid:bob")).shared_secret == SECRET_B


def test_resolve_falls_back_to_first():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A, RecipientIdentity(email="a@example.com"))
    registry.register("s1", SECRET_B, RecipientIdentity(email="b@example.com"))

    assert registry.resolve("s1", RecipientIdentity(uaid="uaid:carol")).shared_secret == SECRET_A


def test_sessions_are_independent():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A)
    registry.register("s2", SECRET_B)

    assert sorted(registry.sessions()) == ["s1", "s2"]
    assert registry.remove("s1") is True
    assert registry.remove("s1") is False
    assert registry.resolve("s2").shared_secret == SECRET_B


def test_get_returns_copy():
    registry = ConversationContextRegistry()
    registry.register("s1", SECRET_A)
    registry.get("s1").clear()
    assert len(registry.get("s1")) == 1


def test_repr_hides_secret():
    registry = ConversationContextRegistry()
    context = registry.register("s1", SECRET_A)
    assert SECRET_A.hex() not in repr(context)
    assert repr(SECRET_A) not in repr(context)


@pytest.mark.parametrize("session_id", ["", "   "])
def test_register_requires_session_id(session_id):
    with pytest.raises(ConfigurationError):
        ConversationContextRegistry().register(session_id, SECRET_A)


def test_register_rejects_bad_secret():
    with pytest.raises(ConfigurationError):
        ConversationContextRegistry().register("s1", b"too short")
