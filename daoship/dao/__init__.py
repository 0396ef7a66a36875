"""
DAO Records
===========
DAOs, proposals and votes, each created from a wallet-signed message.

Flow:
1. Creator signs a createDAO message; the DAO is registered
2. Members sign createProposal messages to open proposals
3. Members sign voteOnProposal messages; one vote per wallet
4. Proposals resolve after their voting period once quorum is reached
5. The DAO's governance token is created once and attached to the record
"""

from .registry import DAORegistry
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

__all__ = [
    "DAORegistry",
    "DAORecord",
    "DAORequest",
    "ProposalRecord",
    "ProposalRequest",
    "ProposalStatus",
    "TokenStatus",
    "VoteChoice",
    "VoteRecord",
]
