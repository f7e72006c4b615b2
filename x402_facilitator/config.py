import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

from x402_facilitator.errors import ConfigError

RELEASE_ON_SETTLE = "release-on-settle"
RELEASE_ON_VERIFY = "release-on-verify"
RELEASE_POLICIES = (RELEASE_ON_SETTLE, RELEASE_ON_VERIFY)

# Public RPC endpoints used when no X402_RPC_URL_<NETWORK> is set
DEFAULT_RPC_URLS = {
    "base-sepolia": "https://sepolia.base.org",
    "base": "https://mainnet.base.org",
    "solana-devnet": "https://api.devnet.solana.com",
    "solana": "https://api.mainnet-beta.solana.com",
}


def network_env_suffix(network: str) -> str:
    return network.upper().replace("-", "_").replace(":", "_")


def _int(values: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = values.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got '{raw}'") from exc
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class NetworkSettings:
    network: str
    rpc_url: str
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class FacilitatorSettings:
    networks: Tuple[NetworkSettings, ...]
    facilitator_private_key: Optional[str] = None
    replay_ttl_seconds: int = 24 * 60 * 60
    redis_url: Optional[str] = None
    release_policy: str = RELEASE_ON_SETTLE
    confirmations: int = 1
    rpc_pool_size: int = 20
    rpc_max_retries: int = 3
    gas_limit: int = 200_000

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "FacilitatorSettings":
        names = [
            name.strip()
            for name in values.get("X402_NETWORKS", "base-sepolia").split(",")
            if name.strip()
        ]
        if not names:
            raise ConfigError("X402_NETWORKS must list at least one network")

        networks = []
        for name in names:
            suffix = network_env_suffix(name)
            rpc_url = values.get(f"X402_RPC_URL_{suffix}") or DEFAULT_RPC_URLS.get(name)
            if not rpc_url:
                raise ConfigError(f"X402_RPC_URL_{suffix} must be set for network '{name}'")
            chain_id_raw = values.get(f"X402_CHAIN_ID_{suffix}")
            chain_id = _int(values, f"X402_CHAIN_ID_{suffix}", 0, minimum=1) if chain_id_raw else None
            networks.append(NetworkSettings(network=name, rpc_url=rpc_url, chain_id=chain_id))

        release_policy = values.get("X402_RELEASE_POLICY", RELEASE_ON_SETTLE).strip().lower()
        if release_policy not in RELEASE_POLICIES:
            raise ConfigError(
                f"X402_RELEASE_POLICY must be one of {', '.join(RELEASE_POLICIES)}, got '{release_policy}'"
            )

        private_key = values.get("FACILITATOR_WALLET") or None
        if private_key is not None:
            private_key = private_key.strip()
            if not private_key.startswith("0x"):
                private_key = "0x" + private_key
            if len(private_key) != 66:
                raise ConfigError("FACILITATOR_WALLET must be 32 bytes (64 hex chars)")

        return cls(
            networks=tuple(networks),
            facilitator_private_key=private_key,
            replay_ttl_seconds=_int(values, "X402_REPLAY_TTL_SECONDS", 24 * 60 * 60, minimum=1),
            redis_url=values.get("X402_REDIS_URL") or None,
            release_policy=release_policy,
            confirmations=_int(values, "X402_CONFIRMATIONS", 1, minimum=1),
            rpc_pool_size=_int(values, "X402_RPC_POOL_SIZE", 20, minimum=1),
            rpc_max_retries=_int(values, "X402_RPC_MAX_RETRIES", 3),
            gas_limit=_int(values, "X402_GAS_LIMIT", 200_000, minimum=21_000),
        )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "FacilitatorSettings":
        """Load settings from the process environment, after reading ``.env``."""
        load_dotenv(env_file)
        return cls.from_mapping(os.environ)

    def network(self, name: str) -> NetworkSettings:
        for item in self.networks:
            if item.network == name:
                return item
        raise ConfigError(f"Network '{name}' is not configured")
