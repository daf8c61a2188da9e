"""
Tests for long-term encryption key generation and registration.
"""

import os

import httpx
import pytest
from dotenv import dotenv_values

from broker_chat import ClientSettings, ConfigurationError, EncryptionKeyOptions, RegistryBrokerClient
from broker_chat.client.keys import generate_encryption_key_pair
from broker_chat.crypto.primitives import derive_public_key, generate_ephemeral_keypair

BROKER_URL = "http://broker.test"
AGENT = "uaid:agent"
ENV_VAR = "BROKER_CHAT_TEST_PRIVATE_KEY"


@pytest.fixture
def clean_env(monkeypatch):
    # Blank counts as unset; monkeypatch removes it again after the test
    monkeypatch.setenv(ENV_VAR, "")


@pytest.mark.asyncio
async def test_ensure_agent_key_generates_and_saves(make_client, broker_state, tmp_path, clean_env):
    client = make_client()
    env_file = tmp_path / "agent.env"

    material = await client.ensure_agent_key(
        AGENT,
        {"generate_if_missing": True, "env_var": ENV_VAR, "env_path": str(env_file)},
    )

    assert derive_public_key(material.private_key) == material.public_key
    assert dotenv_values(env_file)[ENV_VAR] == material.private_key
    assert os.environ[ENV_VAR] == material.private_key
    assert client.encryption_key is material
    assert broker_state.registered_keys == [
        {"keyType": "secp256k1", "publicKey": material.public_key, "uaid": AGENT}
    ]


@pytest.mark.asyncio
async def test_private_key_option_is_derived(make_client, broker_state, clean_env):
    pair = generate_ephemeral_keypair()
    client = make_client()

    material = await client.ensure_agent_key(AGENT, EncryptionKeyOptions(private_key=pair.private_key_hex, env_var=ENV_VAR))

    assert material.public_key == pair.public_key_hex
    assert broker_state.registered_keys[0]["publicKey"] == pair.public_key_hex


@pytest.mark.asyncio
async def test_private_key_from_environment(make_client, broker_state, monkeypatch):
    pair = generate_ephemeral_keypair()
    monkeypatch.setenv(ENV_VAR, pair.private_key_hex)
    client = make_client()

    material = await client.ensure_agent_key(AGENT, {"env_var": ENV_VAR})

    assert material.public_key == pair.public_key_hex
    assert material.env_var == ENV_VAR


@pytest.mark.asyncio
async def test_explicit_public_key_wins(make_client, broker_state, monkeypatch):
    advertised = generate_ephemeral_keypair()
    monkeypatch.setenv(ENV_VAR, generate_ephemeral_keypair().private_key_hex)
    client = make_client()

    material = await client.ensure_agent_key(
        AGENT, {"public_key": advertised.public_key_hex, "env_var": ENV_VAR}
    )

    assert material.public_key == advertised.public_key_hex
    assert material.private_key is None
    assert broker_state.registered_keys[0]["publicKey"] == advertised.public_key_hex


@pytest.mark.asyncio
async def test_bootstrap_requires_identity(make_client, broker_state):
    client = make_client()
    with pytest.raises(ConfigurationError):
        await client.bootstrap_encryption({"public_key": generate_ephemeral_keypair().public_key_hex})
    assert broker_state.requests == []


@pytest.mark.asyncio
async def test_bootstrap_without_key_material_fails(make_client, broker_state, clean_env):
    client = make_client()
    with pytest.raises(ConfigurationError):
        await client.bootstrap_encryption({"email": "agent@example.com", "env_var": ENV_VAR})
    assert broker_state.registered_keys == []


@pytest.mark.asyncio
async def test_bootstrap_disabled_or_unconfigured(make_client, broker_state):
    client = make_client()

    assert await client.bootstrap_encryption() is None
    assert await client.bootstrap_encryption({"enabled": False, "uaid": AGENT}) is None
    assert broker_state.requests == []


@pytest.mark.asyncio
async def test_ledger_identity_registration(make_client, broker_state):
    pair = generate_ephemeral_keypair()
    client = make_client()

    await client.bootstrap_encryption(
        {"ledger_account_id": "0.0.1234", "ledger_network": "testnet", "private_key": pair.private_key_hex}
    )

    assert broker_state.registered_keys == [
        {
            "keyType": "secp256k1",
            "publicKey": pair.public_key_hex,
            "ledgerAccountId": "0.0.1234",
            "ledgerNetwork": "testnet",
        }
    ]


@pytest.mark.asyncio
async def test_context_manager_registers_configured_key(make_client, broker_state):
    pair = generate_ephemeral_keypair()
    client = make_client(auto_register={"uaid": AGENT, "private_key": pair.private_key_hex})

    async with client:
        assert client.encryption_key.public_key == pair.public_key_hex

    assert broker_state.count("POST", "/encryption/keys") == 1


@pytest.mark.asyncio
async def test_initialize_agent(broker_app, broker_state, clean_env):
    client, material = await RegistryBrokerClient.initialize_agent(
        AGENT,
        {"env_var": ENV_VAR, "generate_if_missing": True},
        transport=httpx.ASGITransport(app=broker_app),
        base_url=BROKER_URL,
    )
    async with client:
        assert broker_state.registered_keys[0]["uaid"] == AGENT
        assert broker_state.registered_keys[0]["publicKey"] == material.public_key
        # Already registered, entering does not register again
        assert broker_state.count("POST", "/encryption/keys") == 1


@pytest.mark.asyncio
async def test_initialize_agent_without_key(broker_app, broker_state):
    client, material = await RegistryBrokerClient.initialize_agent(
        AGENT, False, transport=httpx.ASGITransport(app=broker_app), base_url=BROKER_URL
    )
    await client.aclose()

    assert material is None
    assert broker_state.requests == []


def test_generated_key_not_overwritten(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(f"OTHER=1\n{ENV_VAR}=existing\n")

    with pytest.raises(ConfigurationError):
        generate_encryption_key_pair(env_var=ENV_VAR, env_path=str(env_file))

    material = generate_encryption_key_pair(env_var=ENV_VAR, env_path=str(env_file), overwrite=True)
    values = dotenv_values(env_file)
    assert values[ENV_VAR] == material.private_key
    assert values["OTHER"] == "1"


def test_only_secp256k1_generation():
    with pytest.raises(ConfigurationError):
        generate_encryption_key_pair(key_type="ed25519")


def test_nested_settings_from_environment(monkeypatch):
    monkeypatch.setenv("REGISTRY_BROKER_AUTO_REGISTER__UAID", AGENT)
    monkeypatch.setenv("REGISTRY_BROKER_AUTO_REGISTER__GENERATE_IF_MISSING", "true")

    settings = ClientSettings()

    assert settings.auto_register.uaid == AGENT
    assert settings.auto_register.generate_if_missing is True
    assert settings.auto_register.env_var == "RB_ENCRYPTION_PRIVATE_KEY"
