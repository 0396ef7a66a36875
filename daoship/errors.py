"""
DAOShip Errors
==============
Error taxonomy for the token workflow.

Validation-time errors (envelope, identity, plan) are raised immediately and
never retried. Ledger errors halt a workflow at the current step. Persistence
errors are retried locally before surfacing.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class DAOShipError(Exception):
    """Base error: a stable code, a human reason, optional details."""
    code: str
    reason: str
    details: Optional[Any] = None

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}: {self.reason}"
        return f"{self.code}: {self.reason} ({self.details})"


class EnvelopeError(DAOShipError):
    """Signed envelope failed content, freshness or signature checks."""
    MALFORMED = "malformed"
    ACTION_MISMATCH = "action_mismatch"
    PAYLOAD_MISMATCH = "payload_mismatch"
    EXPIRED = "expired"
    BAD_SIGNATURE = "bad_signature"


class IdentityError(DAOShipError):
    """Connected wallet is not the required identity."""
    NOT_CONNECTED = "not_connected"
    WRONG_IDENTITY = "wrong_identity"


class PlanError(DAOShipError):
    """Distribution plan inputs are invalid."""
    EMPTY_RECIPIENT_SET = "empty_recipient_set"
    NON_POSITIVE_AMOUNT = "non_positive_amount"
    DUPLICATE_RECIPIENT = "duplicate_recipient"


class WorkflowError(DAOShipError):
    """Step workflow refused or failed a transition."""
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    NOT_NEXT_STEP = "not_next_step"
    WORKFLOW_HALTED = "workflow_halted"

    @property
    def step_id(self) -> Optional[str]:
        if isinstance(self.details, dict):
            return self.details.get("step_id")
        return None

    @property
    def cause(self) -> Optional[BaseException]:
        if isinstance(self.details, dict):
            return self.details.get("cause")
        return None


class LedgerError(DAOShipError):
    """Opaque ledger failure, passed through from the ledger client."""
    REJECTED = "ledger_rejected"
    UNAVAILABLE = "ledger_unavailable"


class PersistenceError(DAOShipError):
    """Store operation still failing after bounded retries."""
    UNRECOVERABLE = "unrecoverable"


class RecordError(DAOShipError):
    """DAO / proposal / vote record rule violated."""
    NOT_FOUND = "not_found"
    DUPLICATE_VOTE = "duplicate_vote"
    INVALID_STATE = "invalid_state"
    INVALID_ADDRESS = "invalid_address"
    MISSING_FIELDS = "missing_fields"
    INVALID_VOTE = "invalid_vote"
    DUPLICATE_MEMBER = "duplicate_member"
