"""
DAO Types
=========
Records kept in the local system-of-record for DAOs, proposals and votes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class TokenStatus(Enum):
    """Governance token lifecycle for a DAO."""
    NONE = "none"             # Never attempted, or nothing happened
    CREATING = "creating"     # Workflow running; re-invocation blocked
    CREATED = "created"       # Token exists on the ledger
    UNCERTAIN = "uncertain"   # Ledger action may have happened; needs review


class ProposalStatus(Enum):
    ACTIVE = "active"
    PASSED = "passed"
    FAILED = "failed"
    EXECUTED = "executed"


class VoteChoice(Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class DAORequest:
    """Fields a creator submits to register a DAO."""
    name: str
    description: str
    creator: str
    manager: Optional[str] = None
    token_name: str = ""
    token_symbol: str = ""
    token_supply: int = 0
    vote_price: int = 0
    voting_period_days: int = 7
    quorum: int = 20
    min_tokens: int = 0
    github_repo: Optional[str] = None


@dataclass(frozen=True)
class ProposalRequest:
    """Fields a member submits to open a proposal."""
    dao_id: str
    title: str
    description: str
    creator: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


@dataclass
class DAORecord:
    """A DAO and its governance settings."""
    dao_id: str
    name: str
    description: str
    creator: str                 # Wallet address
    manager: str                 # Wallet address
    token_name: str = ""
    token_symbol: str = ""
    token_supply: int = 0
    vote_price: int = 0
    voting_period_days: int = 7
    quorum: int = 20
    min_tokens: int = 0
    github_repo: Optional[str] = None
    members: List[str] = field(default_factory=list)
    proposal_ids: List[str] = field(default_factory=list)
    status: str = "active"

    # Governance token (set by the token workflow)
    token_status: TokenStatus = TokenStatus.NONE
    token_reference: Optional[str] = None
    token_simulated: bool = False
    distribution: Optional[Dict[str, Any]] = None

    signed_message: Optional[str] = None
    signature: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def member_count(self) -> int:
        return len(self.members)

    def is_member(self, address: str) -> bool:
        return any(m.lower() == address.lower() for m in self.members)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dao_id": self.dao_id,
            "name": self.name,
            "description": self.description,
            "creator": self.creator,
            "manager": self.manager,
            "token_name": self.token_name,
            "token_symbol": self.token_symbol,
            "token_supply": self.token_supply,
            "vote_price": self.vote_price,
            "voting_period_days": self.voting_period_days,
            "quorum": self.quorum,
            "min_tokens": self.min_tokens,
            "github_repo": self.github_repo,
            "members": list(self.members),
            "proposal_ids": list(self.proposal_ids),
            "status": self.status,
            "token_status": self.token_status.value,
            "token_reference": self.token_reference,
            "token_simulated": self.token_simulated,
            "distribution": self.distribution,
            "signed_message": self.signed_message,
            "signature": self.signature,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DAORecord":
        return cls(
            dao_id=d["dao_id"],
            name=d["name"],
            description=d.get("description", ""),
            creator=d["creator"],
            manager=d.get("manager", d["creator"]),
            token_name=d.get("token_name", ""),
            token_symbol=d.get("token_symbol", ""),
            token_supply=d.get("token_supply", 0),
            vote_price=d.get("vote_price", 0),
            voting_period_days=d.get("voting_period_days", 7),
            quorum=d.get("quorum", 20),
            min_tokens=d.get("min_tokens", 0),
            github_repo=d.get("github_repo"),
            members=list(d.get("members", [])),
            proposal_ids=list(d.get("proposal_ids", [])),
            status=d.get("status", "active"),
            token_status=TokenStatus(d.get("token_status", "none")),
            token_reference=d.get("token_reference"),
            token_simulated=d.get("token_simulated", False),
            distribution=d.get("distribution"),
            signed_message=d.get("signed_message"),
            signature=d.get("signature"),
            created_at=_parse(d.get("created_at")) or datetime.now(timezone.utc),
        )


@dataclass
class VoteRecord:
    """One wallet's signed vote on a proposal."""
    voter: str
    vote: VoteChoice
    voting_power: int
    signed_message: str
    signature: Optional[str] = None
    cast_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "voter": self.voter,
            "vote": self.vote.value,
            "voting_power": self.voting_power,
            "signed_message": self.signed_message,
            "signature": self.signature,
            "cast_at": _iso(self.cast_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "VoteRecord":
        return cls(
            voter=d["voter"],
            vote=VoteChoice(d["vote"]),
            voting_power=d.get("voting_power", 1),
            signed_message=d.get("signed_message", ""),
            signature=d.get("signature"),
            cast_at=_parse(d.get("cast_at")) or datetime.now(timezone.utc),
        )


@dataclass
class ProposalRecord:
    """A governance proposal and its tally."""
    proposal_id: str
    dao_id: str
    title: str
    description: str
    creator: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: ProposalStatus = ProposalStatus.ACTIVE
    votes: List[VoteRecord] = field(default_factory=list)
    yes_votes: int = 0
    no_votes: int = 0
    abstain_votes: int = 0
    signed_message: Optional[str] = None
    signature: Optional[str] = None
    executed_at: Optional[datetime] = None
    executor: Optional[str] = None
    execution_reference: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_votes(self) -> int:
        return self.yes_votes + self.no_votes + self.abstain_votes

    def has_voted(self, voter: str) -> bool:
        return any(v.voter.lower() == voter.lower() for v in self.votes)

    def vote_of(self, voter: str) -> Optional[VoteRecord]:
        return next((v for v in self.votes if v.voter.lower() == voter.lower()), None)

    def add_vote(self, vote: VoteRecord) -> None:
        self.votes.append(vote)
        if vote.vote == VoteChoice.YES:
            self.yes_votes += vote.voting_power
        elif vote.vote == VoteChoice.NO:
            self.no_votes += vote.voting_power
        else:
            self.abstain_votes += vote.voting_power

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "dao_id": self.dao_id,
            "title": self.title,
            "description": self.description,
            "creator": self.creator,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "status": self.status.value,
            "votes": [v.to_dict() for v in self.votes],
            "yes_votes": self.yes_votes,
            "no_votes": self.no_votes,
            "abstain_votes": self.abstain_votes,
            "signed_message": self.signed_message,
            "signature": self.signature,
            "executed_at": _iso(self.executed_at),
            "executor": self.executor,
            "execution_reference": self.execution_reference,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ProposalRecord":
        return cls(
            proposal_id=d["proposal_id"],
            dao_id=d["dao_id"],
            title=d["title"],
            description=d.get("description", ""),
            creator=d["creator"],
            start_time=_parse(d.get("start_time")),
            end_time=_parse(d.get("end_time")),
            status=ProposalStatus(d.get("status", "active")),
            votes=[VoteRecord.from_dict(v) for v in d.get("votes", [])],
            yes_votes=d.get("yes_votes", 0),
            no_votes=d.get("no_votes", 0),
            abstain_votes=d.get("abstain_votes", 0),
            signed_message=d.get("signed_message"),
            signature=d.get("signature"),
            executed_at=_parse(d.get("executed_at")),
            executor=d.get("executor"),
            execution_reference=d.get("execution_reference"),
            created_at=_parse(d.get("created_at")) or datetime.now(timezone.utc),
        )
