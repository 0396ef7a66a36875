"""
Unit Tests for the DAO Registry
===============================
DAO, proposal and vote records created from signed messages, and the
governance token gate.

Run: python -m pytest tests/test_registry.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

import sys
sys.path.insert(0, '.')

from daoship.config import DISTRIBUTION_WALLETS
from daoship.dao import (
    DAORegistry,
    DAORequest,
    ProposalRequest,
    ProposalStatus,
    TokenStatus,
)
from daoship.envelope import build_message
from daoship.errors import EnvelopeError, RecordError
from daoship.identity import LocalWallet
from daoship.ledger import SimulatedLedger
from daoship.orchestrator import (
    Outcome,
    TokenCreationOrchestrator,
    TokenCreationParams,
    TokenCreationResult,
)
from daoship.persistence import InMemoryStore, JsonFileStore, ResilientStore


NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def sign(wallet, action, payload, at=NOW):
    message = build_message(action, payload, at)
    return message, wallet.sign(message)


# ============================================================
# Test Fixtures
# ============================================================

@pytest.fixture
def backend():
    return InMemoryStore()


@pytest.fixture
def registry(backend):
    return DAORegistry(ResilientStore(backend, sleep=AsyncMock()), clock=lambda: NOW)


@pytest.fixture
def alice():
    return LocalWallet()


@pytest.fixture
def bob():
    return LocalWallet()


async def make_dao(registry, wallet, name="Alpha DAO", **settings):
    message, signature = sign(wallet, "createDAO", {"daoName": name, "creator": wallet.address})
    request = DAORequest(name=name, description="A test DAO", creator=wallet.address, **settings)
    return await registry.create_dao(request, message, signature, wallet.public_key_hex)


async def make_proposal(registry, wallet, dao_id, title="Fund the treasury", **times):
    message, signature = sign(wallet, "createProposal",
                              {"proposalTitle": title, "daoId": dao_id, "creator": wallet.address})
    request = ProposalRequest(dao_id=dao_id, title=title, description="", creator=wallet.address, **times)
    return await registry.create_proposal(request, message, signature, wallet.public_key_hex)


async def vote(registry, wallet, proposal_id, choice, power=1, voter=None):
    voter = voter or wallet.address
    message, signature = sign(wallet, "voteOnProposal",
                              {"proposalId": proposal_id, "voter": voter, "vote": choice})
    return await registry.cast_vote(proposal_id, voter, choice, message, signature,
                                    voting_power=power, public_key=wallet.public_key_hex)


# ============================================================
# DAO Tests
# ============================================================

class TestCreateDAO:
    """createDAO envelopes."""

    @pytest.mark.asyncio
    async def test_creates_and_persists(self, registry, alice):
        dao = await make_dao(registry, alice, token_symbol="alpha", quorum=30)

        assert dao.members == [alice.address]
        assert dao.manager == alice.address
        assert dao.token_symbol == "ALPHA"
        assert dao.token_status == TokenStatus.NONE

        stored = await registry.get_dao(dao.dao_id)
        assert stored.name == "Alpha DAO"
        assert stored.quorum == 30
        assert [d.dao_id for d in await registry.list_daos()] == [dao.dao_id]

    @pytest.mark.asyncio
    async def test_name_mismatch_writes_nothing(self, registry, backend, alice):
        message, signature = sign(alice, "createDAO", {"daoName": "Alpha", "creator": alice.address})
        request = DAORequest(name="Beta", description="", creator=alice.address)

        with pytest.raises(EnvelopeError) as exc:
            await registry.create_dao(request, message, signature, alice.public_key_hex)
        assert exc.value.code == EnvelopeError.PAYLOAD_MISMATCH
        assert backend.records == {}

    @pytest.mark.asyncio
    async def test_expired_envelope(self, registry, alice):
        message, signature = sign(alice, "createDAO", {"daoName": "Alpha", "creator": alice.address},
                                  at=NOW - timedelta(minutes=11))
        with pytest.raises(EnvelopeError) as exc:
            await registry.create_dao(DAORequest("Alpha", "", alice.address), message, signature,
                                      alice.public_key_hex)
        assert exc.value.code == EnvelopeError.EXPIRED

    @pytest.mark.asyncio
    async def test_key_must_belong_to_creator(self, registry, alice, bob):
        # Bob signs a message claiming Alice as creator
        message, signature = sign(bob, "createDAO", {"daoName": "Alpha", "creator": alice.address})
        with pytest.raises(EnvelopeError) as exc:
            await registry.create_dao(DAORequest("Alpha", "", alice.address), message, signature,
                                      bob.public_key_hex)
        assert exc.value.code == EnvelopeError.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_forged_signature(self, registry, alice):
        message, _ = sign(alice, "createDAO", {"daoName": "Alpha", "creator": alice.address})
        with pytest.raises(EnvelopeError) as exc:
            await registry.create_dao(DAORequest("Alpha", "", alice.address), message, "00" * 64,
                                      alice.public_key_hex)
        assert exc.value.code == EnvelopeError.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_invalid_creator_address(self, registry):
        with pytest.raises(RecordError) as exc:
            await registry.create_dao(DAORequest("Alpha", "", "alice"), "{}", None)
        assert exc.value.code == RecordError.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path, alice):
        path = str(tmp_path / "daoship.json")
        first = DAORegistry(ResilientStore(JsonFileStore(path)), clock=lambda: NOW)
        dao = await make_dao(first, alice)

        second = DAORegistry(ResilientStore(JsonFileStore(path)), clock=lambda: NOW)
        reloaded = await second.get_dao(dao.dao_id)
        assert reloaded.members == [alice.address]
        assert reloaded.created_at == NOW


class TestMembership:
    """Joining a DAO and listing its members."""

    @pytest.mark.asyncio
    async def test_join_adds_member(self, registry, alice, bob):
        dao = await make_dao(registry, alice)
        joined = await registry.join_dao(dao.dao_id, bob.address)

        assert joined.members == [alice.address, bob.address]
        assert await registry.get_members(dao.dao_id) == [alice.address, bob.address]
        assert (await registry.get_stats())["total_members"] == 2

    @pytest.mark.asyncio
    async def test_already_member_case_insensitive(self, registry, alice):
        dao = await make_dao(registry, alice)
        with pytest.raises(RecordError) as exc:
            await registry.join_dao(dao.dao_id, "0x" + alice.address[2:].upper())
        assert exc.value.code == RecordError.DUPLICATE_MEMBER
        assert await registry.get_members(dao.dao_id) == [alice.address]

    @pytest.mark.asyncio
    async def test_unknown_dao(self, registry, bob):
        with pytest.raises(RecordError) as exc:
            await registry.join_dao("missing", bob.address)
        assert exc.value.code == RecordError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_member_must_be_address(self, registry, alice):
        dao = await make_dao(registry, alice)
        with pytest.raises(RecordError) as exc:
            await registry.join_dao(dao.dao_id, "bob")
        assert exc.value.code == RecordError.INVALID_ADDRESS


# ============================================================
# Proposal Tests
# ============================================================

class TestCreateProposal:
    """createProposal envelopes; a signature is mandatory."""

    @pytest.mark.asyncio
    async def test_opens_proposal(self, registry, alice):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)

        assert proposal.status == ProposalStatus.ACTIVE
        assert proposal.start_time == NOW
        assert proposal.end_time == NOW + timedelta(days=7)
        assert (await registry.get_dao(dao.dao_id)).proposal_ids == [proposal.proposal_id]
        assert [p.proposal_id for p in await registry.list_proposals(dao.dao_id)] == [proposal.proposal_id]

    @pytest.mark.asyncio
    async def test_signature_required(self, registry, alice):
        dao = await make_dao(registry, alice)
        message, _ = sign(alice, "createProposal",
                          {"proposalTitle": "T", "daoId": dao.dao_id, "creator": alice.address})
        with pytest.raises(EnvelopeError) as exc:
            await registry.create_proposal(ProposalRequest(dao.dao_id, "T", "", alice.address), message, None)
        assert exc.value.code == EnvelopeError.BAD_SIGNATURE

    @pytest.mark.asyncio
    async def test_unknown_dao(self, registry, alice):
        with pytest.raises(RecordError) as exc:
            await make_proposal(registry, alice, "missing")
        assert exc.value.code == RecordError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_creator_must_be_address(self, registry, alice):
        dao = await make_dao(registry, alice)
        message = build_message("createProposal",
                                {"proposalTitle": "T", "daoId": dao.dao_id, "creator": "alice"}, NOW)
        with pytest.raises(RecordError) as exc:
            await registry.create_proposal(ProposalRequest(dao.dao_id, "T", "", "alice"), message, "sig")
        assert exc.value.code == RecordError.INVALID_ADDRESS

    @pytest.mark.asyncio
    async def test_title_mismatch(self, registry, alice):
        dao = await make_dao(registry, alice)
        message, signature = sign(alice, "createProposal",
                                  {"proposalTitle": "Signed title", "daoId": dao.dao_id,
                                   "creator": alice.address})
        with pytest.raises(EnvelopeError) as exc:
            await registry.create_proposal(ProposalRequest(dao.dao_id, "Other title", "", alice.address),
                                           message, signature, alice.public_key_hex)
        assert exc.value.code == EnvelopeError.PAYLOAD_MISMATCH


# ============================================================
# Vote Tests
# ============================================================

class TestCastVote:
    """One signed vote per wallet; resolution after the voting period."""

    @pytest.mark.asyncio
    async def test_tallies(self, registry, alice, bob):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)

        await vote(registry, alice, proposal.proposal_id, "yes", power=3)
        updated = await vote(registry, bob, proposal.proposal_id, "no", power=2)

        assert (updated.yes_votes, updated.no_votes, updated.abstain_votes) == (3, 2, 0)
        assert updated.status == ProposalStatus.ACTIVE
        stored = await registry.get_proposal(proposal.proposal_id)
        assert [v.voter for v in stored.votes] == [alice.address, bob.address]

    @pytest.mark.asyncio
    async def test_duplicate_vote_case_insensitive(self, registry, alice):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)
        await vote(registry, alice, proposal.proposal_id, "yes")

        shouted = "0x" + alice.address[2:].upper()
        with pytest.raises(RecordError) as exc:
            await vote(registry, alice, proposal.proposal_id, "no", voter=shouted)
        assert exc.value.code == RecordError.DUPLICATE_VOTE

    @pytest.mark.asyncio
    async def test_vote_choice_must_match_envelope(self, registry, alice):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)
        message, signature = sign(alice, "voteOnProposal",
                                  {"proposalId": proposal.proposal_id, "voter": alice.address, "vote": "no"})
        with pytest.raises(EnvelopeError) as exc:
            await registry.cast_vote(proposal.proposal_id, alice.address, "yes", message, signature,
                                     public_key=alice.public_key_hex)
        assert exc.value.code == EnvelopeError.PAYLOAD_MISMATCH

    @pytest.mark.asyncio
    async def test_get_vote(self, registry, alice, bob):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)
        await vote(registry, alice, proposal.proposal_id, "abstain", power=4)

        shouted = "0x" + alice.address[2:].upper()
        assert await registry.get_vote(proposal.proposal_id, shouted) == {
            "has_voted": True,
            "vote": {"vote": "abstain", "voting_power": 4, "cast_at": NOW.isoformat()},
        }
        assert await registry.get_vote(proposal.proposal_id, bob.address) == {
            "has_voted": False, "vote": None,
        }

        with pytest.raises(RecordError) as exc:
            await registry.get_vote("missing", bob.address)
        assert exc.value.code == RecordError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_choice(self, registry, alice):
        with pytest.raises(RecordError) as exc:
            await vote(registry, alice, "any", "maybe")
        assert exc.value.code == RecordError.INVALID_VOTE

    @pytest.mark.asyncio
    async def test_unknown_proposal(self, registry, alice):
        with pytest.raises(RecordError) as exc:
            await vote(registry, alice, "missing", "yes")
        assert exc.value.code == RecordError.NOT_FOUND

    @pytest.mark.asyncio
    async def test_passes_after_end_with_quorum(self, registry, alice, bob):
        dao = await make_dao(registry, alice, quorum=20)
        proposal = await make_proposal(registry, alice, dao.dao_id,
                                       start_time=NOW - timedelta(days=8),
                                       end_time=NOW - timedelta(days=1))

        updated = await vote(registry, alice, proposal.proposal_id, "yes", power=25)
        assert updated.status == ProposalStatus.PASSED

        with pytest.raises(RecordError) as exc:
            await vote(registry, bob, proposal.proposal_id, "no")
        assert exc.value.code == RecordError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_fails_when_no_wins(self, registry, alice):
        dao = await make_dao(registry, alice, quorum=1)
        proposal = await make_proposal(registry, alice, dao.dao_id,
                                       start_time=NOW - timedelta(days=8),
                                       end_time=NOW - timedelta(days=1))
        updated = await vote(registry, alice, proposal.proposal_id, "no", power=5)
        assert updated.status == ProposalStatus.FAILED

    @pytest.mark.asyncio
    async def test_stays_active_below_quorum(self, registry, alice):
        dao = await make_dao(registry, alice, quorum=20)
        proposal = await make_proposal(registry, alice, dao.dao_id,
                                       start_time=NOW - timedelta(days=8),
                                       end_time=NOW - timedelta(days=1))
        updated = await vote(registry, alice, proposal.proposal_id, "yes", power=5)
        assert updated.status == ProposalStatus.ACTIVE


class TestExecuteProposal:
    """Only passed proposals execute."""

    @pytest.mark.asyncio
    async def test_execute_passed(self, registry, alice):
        dao = await make_dao(registry, alice, quorum=1)
        proposal = await make_proposal(registry, alice, dao.dao_id,
                                       start_time=NOW - timedelta(days=8),
                                       end_time=NOW - timedelta(days=1))
        await vote(registry, alice, proposal.proposal_id, "yes")

        executed = await registry.execute_proposal(proposal.proposal_id, alice.address, "0xexec")
        assert executed.status == ProposalStatus.EXECUTED
        stored = await registry.get_proposal(proposal.proposal_id)
        assert stored.executor == alice.address
        assert stored.execution_reference == "0xexec"
        assert stored.executed_at == NOW

    @pytest.mark.asyncio
    async def test_active_cannot_execute(self, registry, alice):
        dao = await make_dao(registry, alice)
        proposal = await make_proposal(registry, alice, dao.dao_id)
        with pytest.raises(RecordError) as exc:
            await registry.execute_proposal(proposal.proposal_id, alice.address)
        assert exc.value.code == RecordError.INVALID_STATE


# ============================================================
# Governance Token Tests
# ============================================================

class TestGovernanceToken:
    """A DAO gets at most one token."""

    @pytest.mark.asyncio
    async def test_begin_blocks_second_run(self, registry, alice):
        dao = await make_dao(registry, alice)
        await registry.begin_token_creation(dao.dao_id)
        with pytest.raises(RecordError) as exc:
            await registry.begin_token_creation(dao.dao_id)
        assert exc.value.code == RecordError.INVALID_STATE

    @pytest.mark.asyncio
    async def test_nothing_happened_allows_retry(self, registry, alice):
        dao = await make_dao(registry, alice)
        await registry.begin_token_creation(dao.dao_id)
        await registry.attach_token(dao.dao_id, TokenCreationResult(False, Outcome.NOTHING_HAPPENED))

        assert (await registry.get_dao(dao.dao_id)).token_status == TokenStatus.NONE
        await registry.begin_token_creation(dao.dao_id)

    @pytest.mark.asyncio
    async def test_possible_ledger_action_marks_uncertain(self, registry, alice):
        dao = await make_dao(registry, alice)
        await registry.attach_token(dao.dao_id, TokenCreationResult(False, Outcome.LEDGER_ACTION_POSSIBLE))

        assert (await registry.get_dao(dao.dao_id)).token_status == TokenStatus.UNCERTAIN
        with pytest.raises(RecordError):
            await registry.begin_token_creation(dao.dao_id)

    @pytest.mark.asyncio
    async def test_attach_different_token_refused(self, registry, alice):
        dao = await make_dao(registry, alice)
        await registry.attach_token(dao.dao_id, TokenCreationResult(True, Outcome.COMPLETED, "0xone"))
        with pytest.raises(RecordError):
            await registry.attach_token(dao.dao_id, TokenCreationResult(True, Outcome.COMPLETED, "0xtwo"))

    @pytest.mark.asyncio
    async def test_create_token_end_to_end(self, registry, alice):
        dao = await make_dao(registry, alice)
        ledger = SimulatedLedger()
        orchestrator = TokenCreationOrchestrator(ledger, alice.address, DISTRIBUTION_WALLETS,
                                                 allow_simulated=True)
        params = TokenCreationParams(dao.name, "Alpha Governance", "ALPHA", 1_000_000)

        result = await registry.create_token(dao.dao_id, orchestrator, params, alice)
        assert result.success is True

        stored = await registry.get_dao(dao.dao_id)
        assert stored.token_status == TokenStatus.CREATED
        assert stored.token_reference == result.token_reference
        assert stored.token_simulated is True
        assert stored.distribution["outcome"] == "completed"

        with pytest.raises(RecordError) as exc:
            await registry.create_token(dao.dao_id, orchestrator, params, alice)
        assert exc.value.code == RecordError.INVALID_STATE
        assert len(ledger.token_balances) == 1

    @pytest.mark.asyncio
    async def test_crashed_run_left_uncertain(self, registry, alice):
        dao = await make_dao(registry, alice)
        orchestrator = AsyncMock()
        orchestrator.create_and_distribute_token.side_effect = RuntimeError("process killed")
        params = TokenCreationParams(dao.name, "Alpha Governance", "ALPHA", 1_000_000)

        with pytest.raises(RuntimeError):
            await registry.create_token(dao.dao_id, orchestrator, params, alice)
        assert (await registry.get_dao(dao.dao_id)).token_status == TokenStatus.UNCERTAIN

    @pytest.mark.asyncio
    async def test_stats(self, registry, alice):
        dao = await make_dao(registry, alice)
        await make_dao(registry, alice, name="Beta DAO")
        await make_proposal(registry, alice, dao.dao_id)
        await registry.attach_token(dao.dao_id, TokenCreationResult(True, Outcome.COMPLETED, "0xone"))

        stats = await registry.get_stats()
        assert stats["total_daos"] == 2
        assert stats["total_members"] == 2
        assert stats["total_proposals"] == 1
        assert stats["by_token_status"] == {"created": 1, "none": 1}
