"""
Unit Tests for the Identity Gate
================================
Required-creator checks, wallet sessions and the local wallet.

Run: python -m pytest tests/test_identity.py -v
"""

import pytest
from unittest.mock import AsyncMock

import sys
sys.path.insert(0, '.')

from daoship.errors import IdentityError
from daoship.identity import (
    IdentityCheck,
    LocalWallet,
    WalletSession,
    check,
    compress_public_key,
    derive_address,
    require,
)


REQUIRED = "0x53146ebe37502a000f54c343cd5ec665d5f118d7cc306c62cf41fd27716341d9"
OTHER = "0x695fddb793accf3b65e5e5183d8f136b92fa8963ceeb3fe9a14cb486a668b034"


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def wallet():
    """Wallet mock whose connected address can be switched mid-test."""
    mock = AsyncMock()
    mock.connect.return_value = REQUIRED
    mock.get_connected_address.return_value = REQUIRED
    return mock


# ============================================================
# Gate Tests
# ============================================================

class TestCheck:
    """Comparison of connected and required identities."""

    def test_exact_match(self):
        result = check(REQUIRED, REQUIRED)
        assert result.authorized is True
        assert result.reason is None
        assert result.needs_reconnect is False

    def test_case_insensitive(self):
        assert check(REQUIRED, REQUIRED.upper().replace("0X", "0x")).authorized is True

    def test_surrounding_whitespace_ignored(self):
        assert check(REQUIRED, f"  {REQUIRED}\n").authorized is True

    @pytest.mark.parametrize("connected", [None, "", "   "])
    def test_not_connected(self, connected):
        result = check(REQUIRED, connected)
        assert result.authorized is False
        assert result.reason == IdentityError.NOT_CONNECTED
        assert result.connected_identity is None
        assert "not connected" in result.message()

    def test_wrong_identity_carries_both(self):
        result = check(REQUIRED, OTHER)
        assert result.authorized is False
        assert result.reason == IdentityError.WRONG_IDENTITY
        assert result.required_identity == REQUIRED
        assert result.connected_identity == OTHER
        assert OTHER in result.message() and REQUIRED in result.message()

    def test_require_raises(self):
        with pytest.raises(IdentityError) as exc:
            require(REQUIRED, OTHER)
        assert exc.value.code == IdentityError.WRONG_IDENTITY
        assert exc.value.details == {"required": REQUIRED, "connected": OTHER}

    def test_require_returns_check(self):
        assert isinstance(require(REQUIRED, REQUIRED), IdentityCheck)


# ============================================================
# Wallet Session Tests
# ============================================================

class TestWalletSession:
    """Connect, use, disconnect; the gate re-reads every time."""

    @pytest.mark.asyncio
    async def test_connects_and_disconnects(self, wallet):
        async with WalletSession(wallet) as session:
            assert session.connected_at_open == REQUIRED
        wallet.connect.assert_awaited_once()
        wallet.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnects_on_error(self, wallet):
        with pytest.raises(RuntimeError):
            async with WalletSession(wallet):
                raise RuntimeError("boom")
        wallet.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_check_is_never_cached(self, wallet):
        async with WalletSession(wallet) as session:
            assert (await session.check(REQUIRED)).authorized is True

            # User switches accounts in their wallet
            wallet.get_connected_address.return_value = OTHER
            result = await session.check(REQUIRED)
            assert result.authorized is False
            assert result.reason == IdentityError.WRONG_IDENTITY

    @pytest.mark.asyncio
    async def test_connect_failure_surfaces_as_not_connected(self, wallet):
        wallet.connect.side_effect = ConnectionError("user rejected")
        wallet.get_connected_address.return_value = None

        async with WalletSession(wallet) as session:
            assert session.connected_at_open is None
            result = await session.check(REQUIRED)
        assert result.reason == IdentityError.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_connect_skipped(self, wallet):
        async with WalletSession(wallet, connect=False):
            pass
        wallet.connect.assert_not_awaited()


# ============================================================
# Local Wallet Tests
# ============================================================

class TestLocalWallet:
    """In-process secp256k1 wallet."""

    def test_address_derived_from_compressed_key(self):
        w = LocalWallet()
        assert len(w.public_key) == 33
        assert w.address == derive_address(w.public_key)
        assert w.address.startswith("0x") and len(w.address) == 66

    def test_same_key_same_address(self):
        w = LocalWallet()
        again = LocalWallet(w.private_key_hex)
        assert again.address == w.address
        assert compress_public_key(again._signing_key) == w.public_key

    def test_deterministic_signatures(self):
        w = LocalWallet()
        assert w.sign("hello") == w.sign("hello")
        assert len(bytes.fromhex(w.sign("hello"))) == 64

    @pytest.mark.asyncio
    async def test_connection_state(self):
        w = LocalWallet()
        assert await w.get_connected_address() is None
        assert await w.connect() == w.address
        assert await w.get_connected_address() == w.address
        await w.disconnect()
        assert await w.get_connected_address() is None

    @pytest.mark.asyncio
    async def test_sign_message_matches_sign(self):
        w = LocalWallet()
        assert await w.sign_message("msg") == w.sign("msg")
