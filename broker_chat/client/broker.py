"""
Async HTTP client for the registry broker's chat endpoints.

Wraps session creation, the encryption handshake endpoints, message
relay and history retrieval, and owns the conversation-context registry
used to decrypt history after a session has been established.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar, Union
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from ..config import DEFAULT_KEY_ENV_VAR, ClientSettings, EncryptionKeyOptions, get_settings
from ..crypto.primitives import KEY_TYPE, KeyInput
from ..errors import BrokerError, BrokerParseError, ConfigurationError
from ..models import (
    ChatHistoryCompactionResponse,
    ChatHistorySnapshot,
    CipherEnvelope,
    CreateSessionResponse,
    DecryptedHistoryEntry,
    DecryptedHistorySnapshot,
    EncryptionHandshakeRecord,
    EncryptionHandshakeResponse,
    EncryptionStatusResponse,
    RecipientIdentity,
    RegisterEncryptionKeyResponse,
    SendMessageResponse,
)
from .contexts import ConversationContextRegistry
from .conversation import ConversationHandle, open_history_entry
from .keys import EncryptionKeyMaterial, auto_register_key, coerce_key_options, generate_encryption_key_pair
from .sessions import EncryptionPreference, SessionManager

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _require_session_id(session_id: str, purpose: str) -> str:
    if not session_id or not session_id.strip():
        raise ConfigurationError(f"session_id is required {purpose}")
    return session_id


class RegistryBrokerClient:
    """
    Client for one registry broker.

    Use as an async context manager, or call aclose() when done. Sessions
    established through start_conversation / accept_conversation register
    their shared secret here so fetch_history_snapshot can decrypt later.
    """

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        **overrides: Any,
    ):
        """
        Initialize the broker client.

        Args:
            settings: Explicit settings; defaults to the environment-derived ones
            http_client: Pre-built httpx client (not closed by aclose)
            transport: httpx transport for the internally created client
            **overrides: Individual ClientSettings fields to override
        """
        try:
            if settings is None:
                settings = ClientSettings(**overrides) if overrides else get_settings()
            elif overrides:
                settings = ClientSettings(**{**settings.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid client settings: {e}") from e

        self.settings = settings
        self.base_url = settings.base_url
        self.contexts = ConversationContextRegistry()
        self.encryption_key: Optional[EncryptionKeyMaterial] = None
        self.conversations = SessionManager(self)

        self._default_headers: Dict[str, str] = {
            "accept": "application/json",
            "user-agent": settings.user_agent,
        }
        if settings.api_key:
            self._default_headers["x-api-key"] = settings.api_key
        if settings.ledger_api_key:
            self._default_headers["x-ledger-api-key"] = settings.ledger_api_key

        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            transport=transport,
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> "RegistryBrokerClient":
        if self.encryption_key is None:
            try:
                await self.bootstrap_encryption()
            except BaseException:
                await self.aclose()
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    # Headers

    def set_default_header(self, name: str, value: Optional[str]) -> None:
        """Set a header sent on every request; a blank value removes it."""
        if not name or not name.strip():
            return
        header = name.strip().lower()
        if value is None or not value.strip():
            self._default_headers.pop(header, None)
            return
        self._default_headers[header] = value.strip()

    def set_api_key(self, api_key: Optional[str]) -> None:
        self.set_default_header("x-api-key", api_key)

    def get_default_headers(self) -> Dict[str, str]:
        return dict(self._default_headers)

    # Transport

    def build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    async def request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        Send a request and return the response if it is 2xx.

        Raises:
            BrokerError: On any non-2xx status
        """
        logger.debug("%s %s", method, path)
        response = await self._http.request(
            method,
            self.build_url(path),
            json=body,
            headers=self._default_headers,
        )
        if response.is_success:
            return response
        raise BrokerError(
            "Registry broker request failed",
            status=response.status_code,
            status_text=response.reason_phrase,
            body=self._error_body(response),
        )

    async def request_json(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.request(method, path, body)
        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            raise BrokerParseError("Expected JSON response from registry broker", raw=response.text)
        try:
            return response.json()
        except ValueError as e:
            raise BrokerParseError("Registry broker returned invalid JSON", cause=e, raw=response.text) from e

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type.lower():
            try:
                return response.json()
            except ValueError as e:
                return {"parseError": str(e)}
        return response.text

    @staticmethod
    def parse(model: Type[ModelT], raw: Any, context: str) -> ModelT:
        try:
            return model.model_validate(raw)
        except ValidationError as e:
            raise BrokerParseError(f"Failed to parse {context}", cause=e, raw=raw) from e

    @staticmethod
    def _session_path(session_id: str, suffix: str = "") -> str:
        return f"/chat/session/{quote(session_id, safe='')}{suffix}"

    # Sessions

    async def create_session(
        self,
        uaid: Optional[str] = None,
        agent_url: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        history_ttl_seconds: Optional[int] = None,
        encryption_requested: Optional[bool] = None,
        sender_uaid: Optional[str] = None,
    ) -> CreateSessionResponse:
        """Open a chat session with an agent addressed by UAID or URL."""
        if not uaid and not agent_url:
            raise ConfigurationError("create_session requires either uaid or agent_url")
        body: Dict[str, Any] = {}
        if uaid:
            body["uaid"] = uaid
        if agent_url:
            body["agentUrl"] = agent_url
        if auth:
            body["auth"] = auth
        if history_ttl_seconds is not None:
            body["historyTtlSeconds"] = history_ttl_seconds
        if encryption_requested is not None:
            body["encryptionRequested"] = encryption_requested
        if sender_uaid:
            body["senderUaid"] = sender_uaid
        raw = await self.request_json("POST", "/chat/session", body)
        return self.parse(CreateSessionResponse, raw, "chat session response")

    async def end_session(self, session_id: str) -> None:
        """Delete the session on the broker and forget its local contexts."""
        _require_session_id(session_id, "to end a session")
        await self.request("DELETE", self._session_path(session_id))
        self.contexts.remove(session_id)

    # Encryption

    async def get_encryption_status(self, session_id: str) -> EncryptionStatusResponse:
        _require_session_id(session_id, "for encryption status")
        raw = await self.request_json("GET", self._session_path(session_id, "/encryption"))
        return self.parse(EncryptionStatusResponse, raw, "session encryption status response")

    async def submit_encryption_handshake(
        self,
        session_id: str,
        role: str,
        ephemeral_public_key: str,
        key_type: str = KEY_TYPE,
        uaid: Optional[str] = None,
        user_id: Optional[str] = None,
        ledger_account_id: Optional[str] = None,
        long_term_public_key: Optional[str] = None,
        signature: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EncryptionHandshakeRecord:
        """Publish this side's ephemeral public key for the session."""
        _require_session_id(session_id, "for encryption handshake")
        body = {
            "role": role,
            "keyType": key_type,
            "ephemeralPublicKey": ephemeral_public_key,
            "longTermPublicKey": long_term_public_key,
            "signature": signature,
            "uaid": uaid,
            "userId": user_id,
            "ledgerAccountId": ledger_account_id,
            "metadata": metadata,
        }
        raw = await self.request_json(
            "POST",
            self._session_path(session_id, "/encryption-handshake"),
            {key: value for key, value in body.items() if value is not None},
        )
        return self.parse(EncryptionHandshakeResponse, raw, "encryption handshake response").handshake

    async def register_encryption_key(
        self,
        public_key: str,
        key_type: str = KEY_TYPE,
        uaid: Optional[str] = None,
        ledger_account_id: Optional[str] = None,
        ledger_network: Optional[str] = None,
        email: Optional[str] = None,
    ) -> RegisterEncryptionKeyResponse:
        """Register a long-term public key against an identity."""
        if not (uaid or ledger_account_id or email):
            raise ConfigurationError("Key registration requires uaid, ledger_account_id, or email")
        body: Dict[str, Any] = {"keyType": key_type, "publicKey": public_key}
        if uaid:
            body["uaid"] = uaid
        if ledger_account_id:
            body["ledgerAccountId"] = ledger_account_id
            if ledger_network:
                body["ledgerNetwork"] = ledger_network
        if email:
            body["email"] = email
        raw = await self.request_json("POST", "/encryption/keys", body)
        return self.parse(RegisterEncryptionKeyResponse, raw, "register encryption key response")

    def generate_encryption_key_pair(
        self,
        key_type: str = KEY_TYPE,
        env_var: str = DEFAULT_KEY_ENV_VAR,
        env_path: Optional[str] = None,
        overwrite: bool = False,
    ) -> EncryptionKeyMaterial:
        """Generate a long-term key pair, optionally saving it to a dotenv file."""
        return generate_encryption_key_pair(key_type, env_var, env_path, overwrite)

    async def ensure_agent_key(
        self,
        uaid: str,
        options: Union[EncryptionKeyOptions, Dict[str, Any], None] = None,
    ) -> EncryptionKeyMaterial:
        """
        Make sure `uaid` has an encryption key registered with the broker.

        Args:
            uaid: Agent to register the key for
            options: Where to find the key (see EncryptionKeyOptions)

        Returns:
            The registered key material
        """
        resolved = coerce_key_options(options).model_copy(update={"uaid": uaid, "enabled": True})
        self.encryption_key = await auto_register_key(self, resolved)
        return self.encryption_key

    async def bootstrap_encryption(
        self,
        options: Union[EncryptionKeyOptions, Dict[str, Any], None] = None,
    ) -> Optional[EncryptionKeyMaterial]:
        """
        Register the key described by `options` (default: settings.auto_register).

        Returns:
            The registered key material, or None when auto-registration is off
        """
        if options is None:
            options = self.settings.auto_register
        if options is None:
            return None
        resolved = coerce_key_options(options)
        if not resolved.enabled:
            return None
        self.encryption_key = await auto_register_key(self, resolved)
        return self.encryption_key

    @classmethod
    async def initialize_agent(
        cls,
        uaid: str,
        ensure_encryption_key: Union[bool, EncryptionKeyOptions, Dict[str, Any]] = True,
        **client_options: Any,
    ) -> Tuple["RegistryBrokerClient", Optional[EncryptionKeyMaterial]]:
        """
        Build a client for an agent and register its encryption key.

        With `ensure_encryption_key=True` a key is generated when none is
        configured. Pass options to control where the key comes from, or
        False to skip registration.

        Returns:
            (client, key material or None)
        """
        client = cls(**client_options)
        if ensure_encryption_key is False:
            return client, None
        options = (
            EncryptionKeyOptions(generate_if_missing=True)
            if ensure_encryption_key is True
            else ensure_encryption_key
        )
        try:
            material = await client.ensure_agent_key(uaid, options)
        except BaseException:
            await client.aclose()
            raise
        return client, material

    # Messages

    async def send_message(
        self,
        message: str,
        session_id: Optional[str] = None,
        uaid: Optional[str] = None,
        agent_url: Optional[str] = None,
        auth: Optional[Dict[str, Any]] = None,
        streaming: Optional[bool] = None,
        cipher_envelope: Optional[CipherEnvelope] = None,
    ) -> SendMessageResponse:
        """Relay one message, plain or wrapped in a cipher envelope."""
        if not session_id and not uaid and not agent_url:
            raise ConfigurationError("send_message requires session_id, uaid or agent_url")
        body: Dict[str, Any] = {"message": message}
        if streaming is not None:
            body["streaming"] = streaming
        if auth:
            body["auth"] = auth
        if uaid:
            body["uaid"] = uaid
        if session_id:
            body["sessionId"] = session_id
        if agent_url:
            body["agentUrl"] = agent_url
        if cipher_envelope is not None:
            body["cipherEnvelope"] = cipher_envelope.to_wire()
        raw = await self.request_json("POST", "/chat/message", body)
        return self.parse(SendMessageResponse, raw, "chat message response")

    # History

    async def fetch_history_snapshot(
        self,
        session_id: str,
        decrypt: Optional[bool] = None,
        shared_secret: Optional[KeyInput] = None,
        identity: Optional[RecipientIdentity] = None,
    ) -> DecryptedHistorySnapshot:
        """
        Fetch the session's history, optionally decrypting it.

        Args:
            session_id: Session to read
            decrypt: Force decryption on/off; defaults to settings.auto_decrypt_history
            shared_secret: Key to use instead of the registered context
            identity: Prefer the registered context for this identity

        Returns:
            Snapshot, with decrypted_history populated when decrypting

        Raises:
            ConfigurationError: If envelopes are present but no key is available
        """
        _require_session_id(session_id, "to fetch chat history")
        raw = await self.request_json("GET", self._session_path(session_id, "/history"))
        snapshot = self.parse(ChatHistorySnapshot, raw, "chat history snapshot response")

        should_decrypt = decrypt if decrypt is not None else self.settings.auto_decrypt_history
        if not should_decrypt:
            return DecryptedHistorySnapshot(snapshot=snapshot)

        if not any(entry.cipher_envelope is not None for entry in snapshot.history):
            return DecryptedHistorySnapshot(
                snapshot=snapshot,
                decrypted_history=[
                    DecryptedHistoryEntry(entry=entry, plaintext=entry.content)
                    for entry in snapshot.history
                ],
            )

        if shared_secret is not None:
            secret = shared_secret
        else:
            context = self.contexts.resolve(session_id, identity)
            if context is None:
                raise ConfigurationError(
                    "Unable to decrypt chat history: encryption context unavailable"
                )
            secret = context.shared_secret

        return DecryptedHistorySnapshot(
            snapshot=snapshot,
            decrypted_history=[
                DecryptedHistoryEntry(entry=entry, plaintext=open_history_entry(entry, secret))
                for entry in snapshot.history
            ],
        )

    async def compact_history(
        self,
        session_id: str,
        preserve_entries: Optional[int] = None,
    ) -> ChatHistoryCompactionResponse:
        _require_session_id(session_id, "to compact chat history")
        body: Dict[str, Any] = {}
        if preserve_entries is not None and preserve_entries >= 0:
            body["preserveEntries"] = int(preserve_entries)
        raw = await self.request_json("POST", self._session_path(session_id, "/compact"), body)
        return self.parse(ChatHistoryCompactionResponse, raw, "chat history compaction response")

    # Conversations

    def register_conversation_context(
        self,
        session_id: str,
        shared_secret: KeyInput,
        identity: Optional[RecipientIdentity] = None,
    ) -> None:
        self.contexts.register(session_id, shared_secret, identity)

    async def start_conversation(
        self,
        target: str,
        *,
        preference: Union[EncryptionPreference, str, None] = EncryptionPreference.PREFERRED,
        sender_uaid: Optional[str] = None,
        history_ttl_seconds: Optional[int] = None,
        auth: Optional[Dict[str, Any]] = None,
        handshake_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        on_session_created: Optional[Callable[[str], None]] = None,
        abort: Optional[asyncio.Event] = None,
    ) -> ConversationHandle:
        """Shortcut for self.conversations.start_session(...)."""
        return await self.conversations.start_session(
            target,
            preference=preference,
            sender_uaid=sender_uaid,
            history_ttl_seconds=history_ttl_seconds,
            auth=auth,
            handshake_timeout=handshake_timeout,
            poll_interval=poll_interval,
            on_session_created=on_session_created,
            abort=abort,
        )

    async def accept_conversation(
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
        """Shortcut for self.conversations.accept_session(...)."""
        return await self.conversations.accept_session(
            session_id,
            preference=preference,
            responder_uaid=responder_uaid,
            auth=auth,
            handshake_timeout=handshake_timeout,
            poll_interval=poll_interval,
            abort=abort,
        )
