"""
DAOShip Configuration
=====================
Handles environment variables and workflow settings.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


# Creator wallet that must sign every token creation
REQUIRED_CREATOR_ADDRESS = "0x53146ebe37502a000f54c343cd5ec665d5f118d7cc306c62cf41fd27716341d9"

# Fixed recipients of every governance token distribution
DISTRIBUTION_WALLETS = [
    "0x53146ebe37502a000f54c343cd5ec665d5f118d7cc306c62cf41fd27716341d9",
    "0x695fddb793accf3b65e5e5183d8f136b92fa8963ceeb3fe9a14cb486a668b034",
    "0xd89d2d8c8c3848dbeeaab302e005e16728363a463f63e7b45cc331c655e6991a",
    "0xad66e734548c14021b6ba8e2b03279c2d1f05ae1cba9c9ba28499ac85b8e258c",
]

# Ledger gateway endpoints
NETWORKS = {
    "mainnet": "https://ledger.daoship.xyz/mainnet",
    "testnet": "https://ledger.daoship.xyz/testnet",
    "devnet": "https://ledger.daoship.xyz/devnet",
}


def _split_addresses(raw: Optional[str]) -> List[str]:
    if not raw:
        return list(DISTRIBUTION_WALLETS)
    return [a.strip() for a in raw.split(",") if a.strip()]


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DAOShipConfig:
    """Configuration for the DAOShip token workflow."""

    # Ledger
    network: str  # "mainnet", "testnet" or "devnet"
    ledger_api_url: str
    ledger_timeout_seconds: float

    # Identity gate and distribution
    required_creator_address: str
    distribution_wallets: List[str]
    token_decimals: int

    # Signed envelopes
    envelope_max_age_seconds: int

    # Local system-of-record
    store_path: str
    store_max_attempts: int
    store_base_delay_seconds: float

    # Route ledger calls to the tagged simulator instead of the gateway
    simulate: bool = False

    ledger_api_key: Optional[str] = field(default=None, repr=False)

    # Operator wallet used by the CLI (hex secp256k1 key)
    wallet_private_key: Optional[str] = field(default=None, repr=False)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "DAOShipConfig":
        """Load configuration from environment variables."""
        network = os.getenv("DAOSHIP_NETWORK", "devnet")

        return cls(
            network=network,
            ledger_api_url=os.getenv("LEDGER_API_URL", NETWORKS.get(network, NETWORKS["devnet"])),
            ledger_timeout_seconds=float(os.getenv("LEDGER_TIMEOUT_SECONDS", "60")),
            required_creator_address=os.getenv("REQUIRED_CREATOR_ADDRESS", REQUIRED_CREATOR_ADDRESS),
            distribution_wallets=_split_addresses(os.getenv("DISTRIBUTION_WALLETS")),
            token_decimals=int(os.getenv("TOKEN_DECIMALS", "6")),
            envelope_max_age_seconds=int(os.getenv("ENVELOPE_MAX_AGE_SECONDS", "600")),
            store_path=os.getenv("STORE_PATH", "data/daoship.json"),
            store_max_attempts=int(os.getenv("STORE_MAX_ATTEMPTS", "3")),
            store_base_delay_seconds=float(os.getenv("STORE_BASE_DELAY_SECONDS", "0.5")),
            simulate=_env_bool("DAOSHIP_SIMULATE"),
            ledger_api_key=os.getenv("LEDGER_API_KEY"),
            wallet_private_key=os.getenv("DAOSHIP_WALLET_KEY"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
