"""
Wallet Identity
===============
Required-identity gate and per-call wallet sessions.

Privileged operations (creating the governance token) must originate from a
single externally-held address. The gate is re-evaluated on every attempt:
a wallet that matched a minute ago may have been switched since.
"""

import hashlib
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ecdsa import SECP256k1, SigningKey

from .errors import IdentityError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityCheck:
    """Result of comparing the connected wallet with the required one."""
    required_identity: str
    connected_identity: Optional[str]
    authorized: bool
    reason: Optional[str] = None  # IdentityError code when not authorized

    @property
    def needs_reconnect(self) -> bool:
        return not self.authorized

    def message(self) -> str:
        if self.authorized:
            return "Connected with the required creator wallet"
        if self.reason == IdentityError.NOT_CONNECTED:
            return f"Wallet not connected. Please connect {self.required_identity}"
        return (
            f"Wrong wallet connected ({self.connected_identity}). "
            f"Please switch to {self.required_identity}"
        )


def _normalize(address: Optional[str]) -> Optional[str]:
    if address is None:
        return None
    address = address.strip()
    return address.lower() or None


def check(required_identity: str, connected_identity: Optional[str]) -> IdentityCheck:
    """
    Compare a connected wallet address with the required one.

    Addresses compare case-insensitively. Never cached.
    """
    connected = _normalize(connected_identity)

    if connected is None:
        return IdentityCheck(required_identity, None, False, IdentityError.NOT_CONNECTED)

    if connected != _normalize(required_identity):
        return IdentityCheck(
            required_identity, connected_identity, False, IdentityError.WRONG_IDENTITY
        )

    return IdentityCheck(required_identity, connected_identity, True)


def require(required_identity: str, connected_identity: Optional[str]) -> IdentityCheck:
    """Like ``check`` but raise IdentityError when not authorized."""
    result = check(required_identity, connected_identity)
    if not result.authorized:
        raise IdentityError(
            result.reason,
            result.message(),
            {"required": required_identity, "connected": connected_identity},
        )
    return result


class Wallet(ABC):
    """Capability of a user's wallet, as seen by the workflow."""

    @abstractmethod
    async def connect(self) -> str:
        """Connect and return the wallet address."""

    @abstractmethod
    async def sign_message(self, message: str) -> str:
        """Sign a message, returning a hex signature."""

    @abstractmethod
    async def get_connected_address(self) -> Optional[str]:
        """Currently connected address, or None."""

    async def disconnect(self) -> None:
        return None


class WalletSession:
    """
    Explicit wallet state for one workflow invocation.

    Usage:
        async with WalletSession(wallet) as session:
            result = await session.check(required_address)
    """

    def __init__(self, wallet: Wallet, connect: bool = True):
        self.wallet = wallet
        self._connect = connect
        self.connected_at_open: Optional[str] = None

    async def __aenter__(self) -> "WalletSession":
        if self._connect:
            try:
                self.connected_at_open = await self.wallet.connect()
            except Exception as e:
                # Surfaced through check() as NOT_CONNECTED
                logger.warning("[wallet] connect failed: %s", e)
                self.connected_at_open = None
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.wallet.disconnect()

    async def address(self) -> Optional[str]:
        return await self.wallet.get_connected_address()

    async def check(self, required_identity: str) -> IdentityCheck:
        """Re-read the connected address and run the gate."""
        return check(required_identity, await self.address())

    async def sign(self, message: str) -> str:
        return await self.wallet.sign_message(message)


def derive_address(public_key: bytes) -> str:
    """Account address for a compressed public key: 0x + sha256 hex."""
    return "0x" + hashlib.sha256(public_key).hexdigest()


def compress_public_key(signing_key: SigningKey) -> bytes:
    """33-byte compressed secp256k1 public key."""
    return signing_key.get_verifying_key().to_string("compressed")


class LocalWallet(Wallet):
    """
    Key held in-process. Used by operators running the CLI and by tests;
    browser wallets implement ``Wallet`` on the client side.
    """

    def __init__(self, private_key_hex: Optional[str] = None):
        if private_key_hex:
            private_key = bytes.fromhex(private_key_hex)
        else:
            private_key = secrets.token_bytes(32)
        self._signing_key = SigningKey.from_string(private_key, curve=SECP256k1)
        self.public_key = compress_public_key(self._signing_key)
        self.address = derive_address(self.public_key)
        self._connected = False

    @property
    def private_key_hex(self) -> str:
        return self._signing_key.to_string().hex()

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    async def connect(self) -> str:
        self._connected = True
        return self.address

    async def disconnect(self) -> None:
        self._connected = False

    async def get_connected_address(self) -> Optional[str]:
        return self.address if self._connected else None

    async def sign_message(self, message: str) -> str:
        return self.sign(message)

    def sign(self, message: str) -> str:
        """Synchronous signing; raw r||s over SHA-256, hex-encoded."""
        signature = self._signing_key.sign_deterministic(
            message.encode("utf-8"), hashfunc=hashlib.sha256
        )
        return signature.hex()
