"""
Error types raised by the broker chat client.

Handshake failures carry the session id and the last encryption summary
seen, so callers can retry establishment or fall back to plaintext.
"""

from typing import Any, Optional


class BrokerChatError(Exception):
    """Base exception for the broker chat client"""
    pass


class ConfigurationError(BrokerChatError, ValueError):
    """Invalid local input, detected before any network call"""
    pass


class OperationAbortedError(BrokerChatError):
    """A caller-supplied abort signal fired during a wait"""

    def __init__(self, message: str = "The operation was aborted"):
        super().__init__(message)


class EncryptionUnavailableError(BrokerChatError):
    """The broker reports that encryption is not enabled for a session"""

    def __init__(self, session_id: str, summary: Optional[Any] = None):
        super().__init__("Encryption is not enabled for this session")
        self.session_id = session_id
        self.summary = summary


class HandshakeError(BrokerChatError):
    """Base class for failures while exchanging ephemeral keys"""

    def __init__(self, message: str, session_id: str, summary: Optional[Any] = None):
        super().__init__(message)
        self.session_id = session_id
        self.summary = summary


class HandshakeTimeoutError(HandshakeError):
    """The peer did not publish its key before the deadline"""

    def __init__(self, session_id: str, timeout: float, summary: Optional[Any] = None):
        super().__init__(
            f"Timed out after {timeout:g}s waiting for encrypted handshake completion",
            session_id,
            summary,
        )
        self.timeout = timeout


class HandshakeAbortedError(HandshakeError, OperationAbortedError):
    """The caller's abort signal fired while waiting on the handshake"""

    def __init__(self, session_id: str, summary: Optional[Any] = None):
        HandshakeError.__init__(self, "The operation was aborted", session_id, summary)


class BrokerError(BrokerChatError):
    """Non-2xx response from the registry broker"""

    def __init__(self, message: str, status: int, status_text: str = "", body: Any = None):
        detail = f"{status} {status_text}" if status_text else str(status)
        super().__init__(f"{message} ({detail})")
        self.status = status
        self.status_text = status_text
        self.body = body


class BrokerParseError(BrokerChatError):
    """Broker response was not JSON or did not match the expected shape"""

    def __init__(self, message: str, cause: Any = None, raw: Any = None):
        super().__init__(message)
        self.cause = cause
        self.raw = raw
