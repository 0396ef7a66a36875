"""
Token Distribution
==================
Split a governance token supply equally across a fixed recipient set.

Each recipient gets ``floor(total / count)``; the remainder stays with the
distributing wallet.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .errors import PlanError


@dataclass(frozen=True)
class DistributionPlan:
    """Per-recipient share and remainder for one distribution."""
    total_amount: int
    recipients: Tuple[str, ...]
    per_recipient_amount: int
    remainder: int

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)

    @property
    def total_distributed(self) -> int:
        return self.per_recipient_amount * self.recipient_count

    def to_dict(self) -> dict:
        return {
            "total_amount": self.total_amount,
            "recipients": list(self.recipients),
            "per_recipient_amount": self.per_recipient_amount,
            "remainder": self.remainder,
        }


def plan(total_amount: int, recipients: Sequence[str]) -> DistributionPlan:
    """
    Compute an equal-split distribution plan.

    Raises:
        PlanError: empty recipient set, non-positive total, or a recipient
        listed twice (case-insensitive).
    """
    if not recipients:
        raise PlanError(PlanError.EMPTY_RECIPIENT_SET, "No recipients to distribute to")

    # bool is an int; True is not an amount
    if isinstance(total_amount, bool) or not isinstance(total_amount, int):
        raise PlanError(
            PlanError.NON_POSITIVE_AMOUNT,
            "Total amount must be a positive integer",
            {"total_amount": total_amount},
        )
    if total_amount <= 0:
        raise PlanError(
            PlanError.NON_POSITIVE_AMOUNT,
            "Total amount must be greater than 0",
            {"total_amount": total_amount},
        )

    seen = set()
    for r in recipients:
        key = r.lower()
        if key in seen:
            raise PlanError(
                PlanError.DUPLICATE_RECIPIENT,
                "Recipient listed more than once",
                {"recipient": r},
            )
        seen.add(key)

    count = len(recipients)
    per_recipient = total_amount // count

    return DistributionPlan(
        total_amount=total_amount,
        recipients=tuple(recipients),
        per_recipient_amount=per_recipient,
        remainder=total_amount - per_recipient * count,
    )


@dataclass(frozen=True)
class DistributionEntry:
    """Outcome of the transfer to one recipient."""
    recipient: str
    amount: int
    succeeded: bool
    external_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DistributionResult:
    """
    Best-effort distribution outcome: one entry per recipient, in plan order.

    A failed recipient never aborts the rest, so callers must read the
    entries rather than assume success from the step status.
    """
    plan: DistributionPlan
    entries: List[DistributionEntry] = field(default_factory=list)
    simulated: bool = False

    def record_success(self, recipient: str, amount: int, reference: str) -> None:
        self.entries.append(DistributionEntry(recipient, amount, True, reference))

    def record_failure(self, recipient: str, amount: int, error: str,
                       reference: Optional[str] = None) -> None:
        self.entries.append(DistributionEntry(recipient, amount, False, reference, error))

    @property
    def succeeded_count(self) -> int:
        return sum(1 for e in self.entries if e.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for e in self.entries if not e.succeeded)

    @property
    def all_succeeded(self) -> bool:
        return len(self.entries) == self.plan.recipient_count and self.failed_count == 0

    @property
    def total_distributed(self) -> int:
        return sum(e.amount for e in self.entries if e.succeeded)

    @property
    def retained_by_distributor(self) -> int:
        """Remainder plus every share that failed to transfer."""
        return self.plan.total_amount - self.total_distributed

    @property
    def transaction_references(self) -> List[str]:
        return [e.external_reference for e in self.entries if e.succeeded and e.external_reference]

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.to_dict(),
            "succeeded": self.succeeded_count,
            "failed": self.failed_count,
            "total_distributed": self.total_distributed,
            "retained_by_distributor": self.retained_by_distributor,
            "simulated": self.simulated,
            "entries": [
                {
                    "recipient": e.recipient,
                    "amount": e.amount,
                    "succeeded": e.succeeded,
                    "external_reference": e.external_reference,
                    "error": e.error,
                }
                for e in self.entries
            ],
        }
