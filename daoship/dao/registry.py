"""
DAO Registry
============
System-of-record for DAOs, proposals and votes.

Every mutation arrives with a wallet-signed message. The registry checks
that the message authorizes exactly this mutation before writing anything.
All store access goes through ResilientStore, so reads and merge-writes
retry with backoff.

Flow for a governance token:
1. ``begin_token_creation`` marks the DAO ``creating`` (refused if a token
   is already being created or exists)
2. The orchestrator runs the five-step workflow
3. ``attach_token`` records the token reference and distribution outcome
"""

import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..envelope import MAX_ENVELOPE_AGE, ActionEnvelope, SignatureVerifier, verify_signed_action
from ..errors import EnvelopeError, RecordError
from ..identity import Wallet, derive_address
from ..orchestrator import (
    Outcome,
    TokenCreationOrchestrator,
    TokenCreationParams,
    TokenCreationResult,
)
from ..persistence import ResilientStore
from ..workflow import Observer
from .types import (
    DAORecord,
    DAORequest,
    ProposalRecord,
    ProposalRequest,
    ProposalStatus,
    TokenStatus,
    VoteChoice,
    VoteRecord,
)

logger = logging.getLogger(__name__)

DAO_INDEX_KEY = "index:daos"

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


def _dao_key(dao_id: str) -> str:
    return f"dao:{dao_id}"


def _proposal_key(proposal_id: str) -> str:
    return f"proposal:{proposal_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_address(address: Optional[str]) -> bool:
    """Account addresses are 0x-prefixed hex."""
    return bool(address) and bool(_ADDRESS_RE.match(address))


class DAORegistry:
    """Creates and updates DAO, proposal and vote records."""

    def __init__(
        self,
        store: ResilientStore,
        clock: Callable[[], datetime] = _utcnow,
        max_age: timedelta = MAX_ENVELOPE_AGE,
        verifier: Optional[SignatureVerifier] = None,
    ):
        self.store = store
        self.clock = clock
        self.max_age = max_age
        self.verifier = verifier or SignatureVerifier()

    # ------------------------------------------------------------------
    # Envelope checks
    # ------------------------------------------------------------------

    def _verify(
        self,
        signed_message: str,
        signature: Optional[str],
        action: str,
        payload: Dict[str, Any],
        public_key: Optional[str],
    ) -> ActionEnvelope:
        envelope = verify_signed_action(
            signed_message,
            signature,
            action,
            payload,
            self.clock(),
            public_key=public_key,
            verifier=self.verifier,
            max_age=self.max_age,
        )

        # A valid signature only counts if the key belongs to the actor
        if public_key and envelope.actor_identity:
            try:
                signer = derive_address(bytes.fromhex(public_key.removeprefix("0x")))
            except ValueError as e:
                raise EnvelopeError(EnvelopeError.BAD_SIGNATURE, "Public key is not hex") from e
            if signer.lower() != envelope.actor_identity.lower():
                raise EnvelopeError(
                    EnvelopeError.BAD_SIGNATURE,
                    "Signing key does not belong to the acting wallet",
                    {"signer": signer, "actor": envelope.actor_identity},
                )
        return envelope

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_dao(self, dao_id: str) -> Optional[DAORecord]:
        data = await self.store.get(_dao_key(dao_id))
        return DAORecord.from_dict(data) if data else None

    async def get_proposal(self, proposal_id: str) -> Optional[ProposalRecord]:
        data = await self.store.get(_proposal_key(proposal_id))
        return ProposalRecord.from_dict(data) if data else None

    async def _require_dao(self, dao_id: str) -> DAORecord:
        dao = await self.get_dao(dao_id)
        if dao is None:
            raise RecordError(RecordError.NOT_FOUND, "DAO not found", {"dao_id": dao_id})
        return dao

    async def _require_proposal(self, proposal_id: str) -> ProposalRecord:
        proposal = await self.get_proposal(proposal_id)
        if proposal is None:
            raise RecordError(RecordError.NOT_FOUND, "Proposal not found", {"proposal_id": proposal_id})
        return proposal

    async def list_daos(self) -> List[DAORecord]:
        index = await self.store.get(DAO_INDEX_KEY) or {}
        daos = []
        for dao_id in index.get("dao_ids", []):
            dao = await self.get_dao(dao_id)
            if dao:
                daos.append(dao)
        return daos

    async def list_proposals(self, dao_id: str) -> List[ProposalRecord]:
        dao = await self._require_dao(dao_id)
        proposals = []
        for proposal_id in dao.proposal_ids:
            proposal = await self.get_proposal(proposal_id)
            if proposal:
                proposals.append(proposal)
        return proposals

    # ------------------------------------------------------------------
    # DAOs
    # ------------------------------------------------------------------

    async def create_dao(
        self,
        request: DAORequest,
        signed_message: str,
        signature: Optional[str] = None,
        public_key: Optional[str] = None,
    ) -> DAORecord:
        """
        Register a DAO authorized by a ``createDAO`` envelope.

        The envelope must carry ``{daoName, creator}`` matching the request.
        The manager (the creator unless given) becomes the first member.
        """
        if not request.name or not request.creator:
            raise RecordError(RecordError.MISSING_FIELDS, "DAO name and creator are required")
        if not is_valid_address(request.creator):
            raise RecordError(RecordError.INVALID_ADDRESS, "Invalid creator address format",
                              {"creator": request.creator})

        self._verify(
            signed_message, signature, "createDAO",
            {"daoName": request.name, "creator": request.creator},
            public_key,
        )

        manager = request.manager or request.creator
        dao = DAORecord(
            dao_id=uuid.uuid4().hex,
            name=request.name,
            description=request.description,
            creator=request.creator,
            manager=manager,
            token_name=request.token_name,
            token_symbol=request.token_symbol.upper(),
            token_supply=request.token_supply,
            vote_price=request.vote_price,
            voting_period_days=request.voting_period_days,
            quorum=request.quorum,
            min_tokens=request.min_tokens,
            github_repo=request.github_repo,
            members=[manager],
            signed_message=signed_message,
            signature=signature,
            created_at=self.clock(),
        )

        await self.store.merge(_dao_key(dao.dao_id), dao.to_dict())
        index = await self.store.get(DAO_INDEX_KEY) or {}
        await self.store.merge(DAO_INDEX_KEY, {"dao_ids": index.get("dao_ids", []) + [dao.dao_id]})

        logger.info("[registry] DAO %s created: %s", dao.dao_id, dao.name)
        return dao

    async def join_dao(self, dao_id: str, member: str) -> DAORecord:
        """Add a wallet to a DAO's members."""
        if not is_valid_address(member):
            raise RecordError(RecordError.INVALID_ADDRESS, "Invalid member address format",
                              {"member": member})
        dao = await self._require_dao(dao_id)
        if dao.is_member(member):
            raise RecordError(RecordError.DUPLICATE_MEMBER, "Already a member", {"member": member})

        dao.members.append(member)
        await self.store.merge(_dao_key(dao_id), {"members": dao.members})
        logger.info("[registry] %s joined DAO %s", member, dao_id)
        return dao

    async def get_members(self, dao_id: str) -> List[str]:
        dao = await self._require_dao(dao_id)
        return list(dao.members)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def create_proposal(
        self,
        request: ProposalRequest,
        signed_message: str,
        signature: Optional[str],
        public_key: Optional[str] = None,
    ) -> ProposalRecord:
        """
        Open a proposal authorized by a ``createProposal`` envelope carrying
        ``{proposalTitle, daoId, creator}``. A signature is mandatory.
        """
        if not request.title or not request.dao_id or not request.creator:
            raise RecordError(RecordError.MISSING_FIELDS, "Title, DAO and creator are required")
        if not signed_message or not signature:
            raise EnvelopeError(EnvelopeError.BAD_SIGNATURE,
                                "Wallet signature is required to create proposals")

        self._verify(
            signed_message, signature, "createProposal",
            {"proposalTitle": request.title, "daoId": request.dao_id, "creator": request.creator},
            public_key,
        )

        if not is_valid_address(request.creator):
            raise RecordError(RecordError.INVALID_ADDRESS, "Invalid creator address format",
                              {"creator": request.creator})

        dao = await self._require_dao(request.dao_id)

        start = request.start_time or self.clock()
        end = request.end_time or start + timedelta(days=dao.voting_period_days)
        if end <= start:
            raise RecordError(RecordError.INVALID_STATE, "Proposal must end after it starts")

        proposal = ProposalRecord(
            proposal_id=uuid.uuid4().hex,
            dao_id=dao.dao_id,
            title=request.title,
            description=request.description,
            creator=request.creator,
            start_time=start,
            end_time=end,
            signed_message=signed_message,
            signature=signature,
            created_at=self.clock(),
        )

        await self.store.merge(_proposal_key(proposal.proposal_id), proposal.to_dict())
        await self.store.merge(_dao_key(dao.dao_id),
                               {"proposal_ids": dao.proposal_ids + [proposal.proposal_id]})

        logger.info("[registry] proposal %s opened in DAO %s", proposal.proposal_id, dao.dao_id)
        return proposal

    async def cast_vote(
        self,
        proposal_id: str,
        voter: str,
        vote: str,
        signed_message: str,
        signature: Optional[str],
        voting_power: int = 1,
        public_key: Optional[str] = None,
    ) -> ProposalRecord:
        """
        Record one vote authorized by a ``voteOnProposal`` envelope carrying
        ``{proposalId, voter, vote}``.

        Once the voting period is over and the tally reaches the DAO quorum,
        the proposal resolves to passed (yes > no) or failed.
        """
        try:
            choice = VoteChoice(vote)
        except ValueError as e:
            raise RecordError(RecordError.INVALID_VOTE, "Vote must be yes, no or abstain",
                              {"vote": vote}) from e
        if isinstance(voting_power, bool) or not isinstance(voting_power, int) or voting_power <= 0:
            raise RecordError(RecordError.INVALID_VOTE, "Voting power must be a positive integer")

        proposal = await self._require_proposal(proposal_id)
        if proposal.status != ProposalStatus.ACTIVE:
            raise RecordError(RecordError.INVALID_STATE, "Proposal is not active",
                              {"status": proposal.status.value})

        if not signed_message or not signature:
            raise EnvelopeError(EnvelopeError.BAD_SIGNATURE, "Wallet signature is required to vote")
        self._verify(
            signed_message, signature, "voteOnProposal",
            {"proposalId": proposal_id, "voter": voter, "vote": vote},
            public_key,
        )

        if proposal.has_voted(voter):
            raise RecordError(RecordError.DUPLICATE_VOTE, "You have already voted on this proposal",
                              {"voter": voter})

        now = self.clock()
        proposal.add_vote(VoteRecord(
            voter=voter,
            vote=choice,
            voting_power=voting_power,
            signed_message=signed_message,
            signature=signature,
            cast_at=now,
        ))

        if proposal.end_time and now > proposal.end_time:
            dao = await self.get_dao(proposal.dao_id)
            quorum = dao.quorum if dao else 0
            if proposal.total_votes >= quorum:
                proposal.status = (
                    ProposalStatus.PASSED if proposal.yes_votes > proposal.no_votes
                    else ProposalStatus.FAILED
                )
                logger.info("[registry] proposal %s resolved: %s", proposal_id, proposal.status.value)

        await self.store.merge(_proposal_key(proposal_id), {
            "votes": [v.to_dict() for v in proposal.votes],
            "yes_votes": proposal.yes_votes,
            "no_votes": proposal.no_votes,
            "abstain_votes": proposal.abstain_votes,
            "status": proposal.status.value,
        })
        return proposal

    async def get_vote(self, proposal_id: str, voter: str) -> Dict[str, Any]:
        """Whether ``voter`` has voted on a proposal, and how."""
        proposal = await self._require_proposal(proposal_id)
        vote = proposal.vote_of(voter)
        return {
            "has_voted": vote is not None,
            "vote": {
                "vote": vote.vote.value,
                "voting_power": vote.voting_power,
                "cast_at": vote.cast_at.isoformat(),
            } if vote else None,
        }

    async def execute_proposal(
        self,
        proposal_id: str,
        executor: str,
        execution_reference: Optional[str] = None,
    ) -> ProposalRecord:
        """Mark a passed proposal executed."""
        proposal = await self._require_proposal(proposal_id)
        if proposal.status != ProposalStatus.PASSED:
            raise RecordError(RecordError.INVALID_STATE, "Only passed proposals can be executed",
                              {"status": proposal.status.value})

        proposal.status = ProposalStatus.EXECUTED
        proposal.executed_at = self.clock()
        proposal.executor = executor
        proposal.execution_reference = execution_reference

        await self.store.merge(_proposal_key(proposal_id), {
            "status": proposal.status.value,
            "executed_at": proposal.executed_at.isoformat(),
            "executor": executor,
            "execution_reference": execution_reference,
        })
        return proposal

    # ------------------------------------------------------------------
    # Governance token
    # ------------------------------------------------------------------

    async def begin_token_creation(self, dao_id: str) -> DAORecord:
        """Claim the DAO for a token run; refuses while one is running or done."""
        dao = await self._require_dao(dao_id)
        if dao.token_status != TokenStatus.NONE:
            raise RecordError(
                RecordError.INVALID_STATE,
                f"DAO token is {dao.token_status.value}; refusing to create another",
                {"token_reference": dao.token_reference},
            )
        dao.token_status = TokenStatus.CREATING
        await self.store.merge(_dao_key(dao_id), {"token_status": dao.token_status.value})
        return dao

    async def attach_token(self, dao_id: str, result: TokenCreationResult) -> DAORecord:
        """Record a token run's outcome against the DAO."""
        dao = await self._require_dao(dao_id)

        if result.token_reference:
            if dao.token_reference and dao.token_reference != result.token_reference:
                raise RecordError(
                    RecordError.INVALID_STATE,
                    "DAO already has a different token",
                    {"existing": dao.token_reference, "new": result.token_reference},
                )
            status = TokenStatus.CREATED
        elif result.outcome == Outcome.LEDGER_ACTION_POSSIBLE:
            status = TokenStatus.UNCERTAIN
        else:
            status = TokenStatus.NONE

        dao.token_status = status
        dao.token_reference = result.token_reference or dao.token_reference
        dao.token_simulated = result.simulated
        dao.distribution = result.to_dict()

        await self.store.merge(_dao_key(dao_id), {
            "token_status": dao.token_status.value,
            "token_reference": dao.token_reference,
            "token_simulated": dao.token_simulated,
            "distribution": dao.distribution,
        })
        logger.info("[registry] DAO %s token %s (%s)", dao_id, status.value, result.outcome.value)
        return dao

    async def create_token(
        self,
        dao_id: str,
        orchestrator: TokenCreationOrchestrator,
        params: TokenCreationParams,
        wallet: Wallet,
        on_progress: Optional[Observer] = None,
    ) -> TokenCreationResult:
        """Run the token workflow for a DAO, gated against re-invocation."""
        await self.begin_token_creation(dao_id)
        try:
            result = await orchestrator.create_and_distribute_token(params, wallet, on_progress)
        except BaseException:
            # Claim stays "uncertain" rather than "creating" forever
            await self.store.merge(_dao_key(dao_id), {"token_status": TokenStatus.UNCERTAIN.value})
            raise
        await self.attach_token(dao_id, result)
        return result

    async def get_stats(self) -> Dict[str, Any]:
        """Registry statistics."""
        daos = await self.list_daos()
        by_token_status: Dict[str, int] = {}
        for dao in daos:
            status = dao.token_status.value
            by_token_status[status] = by_token_status.get(status, 0) + 1
        return {
            "total_daos": len(daos),
            "total_members": sum(d.member_count for d in daos),
            "total_proposals": sum(len(d.proposal_ids) for d in daos),
            "by_token_status": by_token_status,
        }
