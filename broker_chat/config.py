"""Client settings loaded from keyword arguments or the environment."""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://hol.org/registry/api/v1"
DEFAULT_USER_AGENT = "broker-chat-python"
DEFAULT_KEY_ENV_VAR = "RB_ENCRYPTION_PRIVATE_KEY"


class EncryptionKeyOptions(BaseModel):
    """
    How to find and register this agent's long-term encryption key.

    Key material is resolved in order: public_key, private_key, the
    `env_var` environment variable, then a fresh pair when
    generate_if_missing is set (written to `env_path` if given).
    """

    enabled: bool = True
    uaid: Optional[str] = None
    ledger_account_id: Optional[str] = None
    ledger_network: Optional[str] = None
    email: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    key_type: str = "secp256k1"
    env_var: str = DEFAULT_KEY_ENV_VAR
    env_path: Optional[str] = None
    overwrite_env: bool = False
    generate_if_missing: bool = False


class ClientSettings(BaseSettings):
    """Settings for a RegistryBrokerClient, read from REGISTRY_BROKER_* env vars."""

    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_BROKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    base_url: str = DEFAULT_BASE_URL
    api_key: Optional[str] = None
    ledger_api_key: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    request_timeout: float = 30.0

    # Handshake polling, in seconds
    handshake_timeout: float = 30.0
    poll_interval: float = 1.0

    auto_decrypt_history: bool = False

    # Registered when the client is entered, e.g. REGISTRY_BROKER_AUTO_REGISTER__UAID
    auto_register: Optional[EncryptionKeyOptions] = None

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slashes(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        return value or DEFAULT_BASE_URL

    @field_validator("handshake_timeout", "poll_interval", "request_timeout")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


@lru_cache
def get_settings() -> ClientSettings:
    """Get cached settings instance."""
    return ClientSettings()
