"""
Long-term encryption key bootstrap.

An agent advertises a secp256k1 public key against its identity through
the broker's key registry. The key itself either comes from the caller or
the environment, or is generated and saved to a dotenv file so the agent
keeps the same key across restarts.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import dotenv_values, set_key

from ..config import DEFAULT_KEY_ENV_VAR, EncryptionKeyOptions
from ..crypto.primitives import KEY_TYPE, derive_public_key, generate_ephemeral_keypair, load_public_key
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class EncryptionKeyMaterial:
    """
    A registered (or registrable) encryption key.

    Attributes:
        public_key: Compressed public key, hex
        private_key: Private scalar, hex, when known locally
        env_var: Environment variable holding the private key
        env_path: Dotenv file the private key was written to
    """
    public_key: str
    private_key: Optional[str] = None
    env_var: Optional[str] = None
    env_path: Optional[str] = None

    def __repr__(self) -> str:
        return f"EncryptionKeyMaterial(public_key={self.public_key!r}, env_var={self.env_var!r})"


def coerce_key_options(options: Any) -> EncryptionKeyOptions:
    if isinstance(options, EncryptionKeyOptions):
        return options
    if options is None:
        return EncryptionKeyOptions()
    if isinstance(options, dict):
        return EncryptionKeyOptions(**options)
    raise ConfigurationError(f"Unsupported encryption key options: {type(options).__name__}")


def write_env_key(env_path: str, env_var: str, value: str, overwrite: bool = False) -> str:
    """
    Store `env_var=value` in a dotenv file, creating the file if needed.

    Returns:
        Absolute path of the file written

    Raises:
        ConfigurationError: If the variable is already set there and overwrite is False
    """
    path = Path(env_path).expanduser().resolve()
    if path.exists() and env_var in dotenv_values(path) and not overwrite:
        raise ConfigurationError(
            f"{env_var} already exists in {path}; set overwrite=True to replace it"
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.touch(exist_ok=True)
    set_key(str(path), env_var, value, quote_mode="never")
    return str(path)


def generate_encryption_key_pair(
    key_type: str = KEY_TYPE,
    env_var: str = DEFAULT_KEY_ENV_VAR,
    env_path: Optional[str] = None,
    overwrite: bool = False,
) -> EncryptionKeyMaterial:
    """
    Generate a long-term secp256k1 key pair, optionally saving the private key.

    Args:
        key_type: Only "secp256k1" is supported
        env_var: Variable name used for the private key
        env_path: Dotenv file to write `env_var=<private key hex>` into
        overwrite: Replace an existing `env_var` line in `env_path`
    """
    if key_type != KEY_TYPE:
        raise ConfigurationError(f"Only {KEY_TYPE} key generation is supported")
    pair = generate_ephemeral_keypair()
    written = write_env_key(env_path, env_var, pair.private_key_hex, overwrite) if env_path else None
    return EncryptionKeyMaterial(
        public_key=pair.public_key_hex,
        private_key=pair.private_key_hex,
        env_var=env_var,
        env_path=written,
    )


def _identity_fields(options: EncryptionKeyOptions) -> Optional[Dict[str, str]]:
    identity: Dict[str, str] = {}
    if options.uaid:
        identity["uaid"] = options.uaid
    if options.ledger_account_id:
        identity["ledger_account_id"] = options.ledger_account_id
        if options.ledger_network:
            identity["ledger_network"] = options.ledger_network
    if options.email:
        identity["email"] = options.email
    return identity or None


def resolve_key_material(options: EncryptionKeyOptions) -> Optional[EncryptionKeyMaterial]:
    """Find the key to register, generating one if allowed. None if nothing is available."""
    if options.public_key and options.public_key.strip():
        public_key = options.public_key.strip()
        if options.key_type == KEY_TYPE:
            load_public_key(public_key)
        return EncryptionKeyMaterial(public_key=public_key)

    private_key = options.private_key.strip() if options.private_key else None
    if not private_key and options.env_var:
        private_key = os.environ.get(options.env_var, "").strip() or None

    if private_key:
        return EncryptionKeyMaterial(
            public_key=derive_public_key(private_key),
            private_key=private_key,
            env_var=options.env_var,
        )

    if options.generate_if_missing:
        material = generate_encryption_key_pair(
            key_type=options.key_type,
            env_var=options.env_var,
            env_path=options.env_path,
            overwrite=options.overwrite_env,
        )
        if options.env_var:
            os.environ[options.env_var] = material.private_key
        logger.info("Generated new %s encryption key", options.key_type)
        return material

    return None


async def auto_register_key(broker, options: EncryptionKeyOptions) -> EncryptionKeyMaterial:
    """
    Resolve this agent's key and register it with the broker.

    Raises:
        ConfigurationError: No identity given, or no key could be resolved
    """
    identity = _identity_fields(options)
    if identity is None:
        raise ConfigurationError("Key registration requires uaid, ledger_account_id, or email")
    material = resolve_key_material(options)
    if material is None:
        raise ConfigurationError("Unable to resolve an encryption public key to register")

    await broker.register_encryption_key(
        public_key=material.public_key,
        key_type=options.key_type,
        **identity,
    )
    logger.info(
        "Registered %s encryption key for %s",
        options.key_type,
        identity.get("uaid") or identity.get("ledger_account_id") or identity.get("email"),
    )
    return material
