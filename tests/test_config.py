import os

import pytest

from x402_facilitator.config import (
    RELEASE_ON_SETTLE,
    RELEASE_ON_VERIFY,
    FacilitatorSettings,
    network_env_suffix,
)
from x402_facilitator.errors import ConfigError

KEY = "ab" * 32


def test_defaults() -> None:
    settings = FacilitatorSettings.from_mapping({})

    assert [item.network for item in settings.networks] == ["base-sepolia"]
    assert settings.network("base-sepolia").rpc_url == "https://sepolia.base.org"
    assert settings.facilitator_private_key is None
    assert settings.replay_ttl_seconds == 86400
    assert settings.redis_url is None
    assert settings.release_policy == RELEASE_ON_SETTLE
    assert settings.confirmations == 1
    assert settings.rpc_pool_size == 20
    assert settings.rpc_max_retries == 3
    assert settings.gas_limit == 200_000


def test_per_network_overrides() -> None:
    settings = FacilitatorSettings.from_mapping(
        {
            "X402_NETWORKS": "base, avalanche-fuji",
            "X402_RPC_URL_BASE": "https://rpc.example/base",
            "X402_RPC_URL_AVALANCHE_FUJI": "https://rpc.example/fuji",
            "X402_CHAIN_ID_AVALANCHE_FUJI": "43113",
        }
    )

    assert settings.network("base").rpc_url == "https://rpc.example/base"
    assert settings.network("base").chain_id is None
    assert settings.network("avalanche-fuji").chain_id == 43113


def test_network_without_rpc_url() -> None:
    with pytest.raises(ConfigError):
        FacilitatorSettings.from_mapping({"X402_NETWORKS": "polygon"})


def test_unknown_network_lookup() -> None:
    with pytest.raises(ConfigError):
        FacilitatorSettings.from_mapping({}).network("base")


def test_private_key_is_normalised() -> None:
    assert FacilitatorSettings.from_mapping({"FACILITATOR_WALLET": KEY}).facilitator_private_key == "0x" + KEY
    assert FacilitatorSettings.from_mapping({"FACILITATOR_WALLET": "0x" + KEY}).facilitator_private_key == "0x" + KEY


def test_private_key_length() -> None:
    with pytest.raises(ConfigError):
        FacilitatorSettings.from_mapping({"FACILITATOR_WALLET": "0x1234"})


def test_release_policy() -> None:
    settings = FacilitatorSettings.from_mapping({"X402_RELEASE_POLICY": "Release-On-Verify"})
    assert settings.release_policy == RELEASE_ON_VERIFY

    with pytest.raises(ConfigError):
        FacilitatorSettings.from_mapping({"X402_RELEASE_POLICY": "never"})


@pytest.mark.parametrize(
    "key,value",
    [
        ("X402_REPLAY_TTL_SECONDS", "0"),
        ("X402_CONFIRMATIONS", "zero"),
        ("X402_RPC_MAX_RETRIES", "-1"),
        ("X402_GAS_LIMIT", "100"),
    ],
)
def test_invalid_integers(key: str, value: str) -> None:
    with pytest.raises(ConfigError):
        FacilitatorSettings.from_mapping({key: value})


def test_from_env_reads_dotenv(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("X402_CONFIRMATIONS", raising=False)
    monkeypatch.delenv("X402_REDIS_URL", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("X402_CONFIRMATIONS=3\nX402_REDIS_URL=redis://localhost:6379/0\n")

    try:
        settings = FacilitatorSettings.from_env(str(env_file))
    finally:
        os.environ.pop("X402_CONFIRMATIONS", None)
        os.environ.pop("X402_REDIS_URL", None)

    assert settings.confirmations == 3
    assert settings.redis_url == "redis://localhost:6379/0"


def test_network_env_suffix() -> None:
    assert network_env_suffix("base-sepolia") == "BASE_SEPOLIA"
    assert network_env_suffix("eip155:8453") == "EIP155_8453"
