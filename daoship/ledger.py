"""
Ledger Capability
=================
What the token workflow needs from the ledger: fund an account, create a
token, register recipients for it, transfer, and wait for confirmation.

Two implementations:
- HttpLedgerClient: talks to a ledger gateway over HTTP
- SimulatedLedger: in-process stand-in whose every result is tagged
  ``simulated=True`` with ``sim:`` references, so it can never be mistaken
  for a real on-chain outcome
"""

import asyncio
import hashlib
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import LedgerError

logger = logging.getLogger(__name__)

# Faucet top-up threshold in base units
MIN_FUNDING_BALANCE = 100_000_000

SIMULATED_PREFIX = "sim:"


@dataclass(frozen=True)
class TokenConfig:
    """Parameters of a governance token."""
    name: str
    symbol: str
    decimals: int
    total_supply: int
    description: str
    icon_uri: Optional[str] = None
    project_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "total_supply": self.total_supply,
            "description": self.description,
        }
        if self.icon_uri:
            data["icon_uri"] = self.icon_uri
        if self.project_uri:
            data["project_uri"] = self.project_uri
        return data


@dataclass(frozen=True)
class TokenCreation:
    """Submitted token creation."""
    asset_reference: str
    tx_reference: str
    simulated: bool = False


@dataclass(frozen=True)
class Confirmation:
    """Final status of a submitted transaction."""
    tx_reference: str
    success: bool
    detail: Optional[str] = None
    simulated: bool = False


class Ledger(ABC):
    """Ledger capability used by the orchestrator."""

    simulated: bool = False

    @abstractmethod
    async def ensure_funded(self, address: str) -> bool:
        """Top up ``address`` if needed. Returns True if a top-up happened."""

    @abstractmethod
    async def create_token(self, config: TokenConfig, creator: str) -> TokenCreation:
        """Submit token creation with the full supply minted to ``creator``."""

    @abstractmethod
    async def register_recipients(self, asset_reference: str, addresses: List[str]) -> str:
        """Make every address able to hold the asset. Returns a tx reference."""

    @abstractmethod
    async def transfer(self, asset_reference: str, sender: str, recipient: str, amount: int) -> str:
        """Submit a transfer. Returns a tx reference."""

    @abstractmethod
    async def wait_for_confirmation(self, tx_reference: str) -> Confirmation:
        """Block until the transaction is final. May wait indefinitely."""

    @abstractmethod
    async def get_token_balance(self, asset_reference: str, address: str) -> int:
        """Balance of ``asset_reference`` held by ``address``."""


class HttpLedgerClient(Ledger):
    """
    Ledger gateway client.

    Usage:
        async with HttpLedgerClient(api_url) as ledger:
            creation = await ledger.create_token(config, creator)
            await ledger.wait_for_confirmation(creation.tx_reference)
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        poll_interval: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        request_timeout: float = 30.0,
    ):
        self.api_url = api_url.rstrip("/")
        self.poll_interval = poll_interval
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(headers=headers, timeout=request_timeout)

    async def __aenter__(self) -> "HttpLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.api_url}{path}"
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise LedgerError(LedgerError.UNAVAILABLE, f"Ledger unreachable: {e}", {"url": url}) from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
                message = body.get("message") or body.get("error") or resp.text
            except ValueError:
                message = resp.text
            raise LedgerError(
                LedgerError.REJECTED,
                message or f"HTTP {resp.status_code}",
                {"status_code": resp.status_code, "url": url},
            )

        if not resp.content:
            return {}
        return resp.json()

    async def get_balance(self, address: str) -> int:
        data = await self._request("GET", f"/accounts/{address}/balance")
        return int(data.get("balance", 0))

    async def ensure_funded(self, address: str) -> bool:
        balance = await self.get_balance(address)
        logger.info("[ledger] %s balance: %d", address, balance)
        if balance >= MIN_FUNDING_BALANCE:
            return False

        logger.info("[ledger] funding %s from faucet", address)
        await self._request("POST", "/faucet", json={"address": address, "amount": MIN_FUNDING_BALANCE})
        return True

    async def create_token(self, config: TokenConfig, creator: str) -> TokenCreation:
        payload = config.to_dict()
        payload["creator"] = creator
        data = await self._request("POST", "/tokens", json=payload)
        try:
            return TokenCreation(data["asset_reference"], data["tx_reference"])
        except KeyError as e:
            raise LedgerError(LedgerError.REJECTED, f"Token creation response missing {e}") from e

    async def register_recipients(self, asset_reference: str, addresses: List[str]) -> str:
        data = await self._request(
            "POST", f"/assets/{asset_reference}/registrations", json={"addresses": list(addresses)}
        )
        return data["tx_reference"]

    async def transfer(self, asset_reference: str, sender: str, recipient: str, amount: int) -> str:
        data = await self._request(
            "POST",
            f"/assets/{asset_reference}/transfers",
            json={"from": sender, "to": recipient, "amount": str(amount)},
        )
        return data["tx_reference"]

    async def wait_for_confirmation(self, tx_reference: str) -> Confirmation:
        while True:
            data = await self._request("GET", f"/transactions/{tx_reference}")
            status = data.get("status", "pending")
            if status == "success":
                return Confirmation(tx_reference, True, data.get("vm_status"))
            if status == "failed":
                return Confirmation(tx_reference, False, data.get("vm_status") or "Transaction failed")
            await asyncio.sleep(self.poll_interval)

    async def get_token_balance(self, asset_reference: str, address: str) -> int:
        data = await self._request("GET", f"/assets/{asset_reference}/balances/{address}")
        return int(data.get("amount", 0))


class SimulatedLedger(Ledger):
    """
    In-process ledger for dry runs.

    Every reference starts with ``sim:`` and every result carries
    ``simulated=True``.
    """

    simulated = True

    def __init__(self, starting_balance: int = 0):
        self.starting_balance = starting_balance
        self.account_balances: Dict[str, int] = {}
        self.token_balances: Dict[str, Dict[str, int]] = {}
        self.registrations: Dict[str, set] = {}
        self.transactions: Dict[str, Confirmation] = {}
        self._counter = itertools.count(1)

    def _reference(self, kind: str, *parts: Any) -> str:
        seed = f"{kind}:{next(self._counter)}:{':'.join(str(p) for p in parts)}"
        return SIMULATED_PREFIX + "0x" + hashlib.sha256(seed.encode()).hexdigest()

    def _record(self, success: bool = True, detail: Optional[str] = None, *parts: Any) -> str:
        ref = self._reference("tx", *parts)
        self.transactions[ref] = Confirmation(ref, success, detail, simulated=True)
        return ref

    async def ensure_funded(self, address: str) -> bool:
        balance = self.account_balances.setdefault(address.lower(), self.starting_balance)
        if balance >= MIN_FUNDING_BALANCE:
            return False
        self.account_balances[address.lower()] = MIN_FUNDING_BALANCE
        return True

    async def create_token(self, config: TokenConfig, creator: str) -> TokenCreation:
        asset = f"{SIMULATED_PREFIX}{creator.lower()}::{config.symbol.lower()}::{config.symbol}"
        if asset in self.token_balances:
            # Same symbol again still yields a distinct token
            asset = f"{asset}#{next(self._counter)}"
        self.token_balances[asset] = {creator.lower(): config.total_supply}
        self.registrations[asset] = {creator.lower()}
        tx = self._record(True, None, "create", asset)
        logger.info("[ledger] simulated token %s created", asset)
        return TokenCreation(asset, tx, simulated=True)

    async def register_recipients(self, asset_reference: str, addresses: List[str]) -> str:
        if asset_reference not in self.token_balances:
            raise LedgerError(LedgerError.REJECTED, "Unknown asset", {"asset": asset_reference})
        self.registrations[asset_reference].update(a.lower() for a in addresses)
        return self._record(True, None, "register", asset_reference)

    async def transfer(self, asset_reference: str, sender: str, recipient: str, amount: int) -> str:
        balances = self.token_balances.get(asset_reference)
        if balances is None:
            raise LedgerError(LedgerError.REJECTED, "Unknown asset", {"asset": asset_reference})
        if recipient.lower() not in self.registrations[asset_reference]:
            raise LedgerError(LedgerError.REJECTED, "Recipient not registered for asset",
                              {"recipient": recipient})
        if balances.get(sender.lower(), 0) < amount:
            raise LedgerError(LedgerError.REJECTED, "Insufficient token balance", {"sender": sender})

        balances[sender.lower()] -= amount
        balances[recipient.lower()] = balances.get(recipient.lower(), 0) + amount
        return self._record(True, None, "transfer", asset_reference, recipient, amount)

    async def wait_for_confirmation(self, tx_reference: str) -> Confirmation:
        confirmation = self.transactions.get(tx_reference)
        if confirmation is None:
            raise LedgerError(LedgerError.REJECTED, "Unknown transaction", {"tx": tx_reference})
        return confirmation

    async def get_token_balance(self, asset_reference: str, address: str) -> int:
        return self.token_balances.get(asset_reference, {}).get(address.lower(), 0)


def is_simulated_reference(reference: Optional[str]) -> bool:
    return bool(reference) and reference.startswith(SIMULATED_PREFIX)
