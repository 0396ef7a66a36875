"""
Token Creation & Distribution
=============================
Creates a DAO governance token and distributes it to the fixed wallets.

Flow:
1. Connect the required creator wallet (identity gate)
2. Check/fund the creator wallet
3. Create the governance token
4. Register the token with every recipient wallet
5. Distribute equal shares to the recipients

Steps 3-5 are irreversible once confirmed. A failure in 3 or 4 stops the
run before any transfer; a recipient failing in 5 does not stop the other
transfers. Nothing is persisted here: running this again after step 3
succeeded creates a second token. DAORegistry.create_token gates reruns.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from . import distribution
from .distribution import DistributionPlan, DistributionResult
from .errors import DAOShipError, IdentityError, LedgerError, PlanError, WorkflowError
from .identity import IdentityCheck, Wallet, WalletSession
from .ledger import Ledger, TokenConfig, TokenCreation
from .workflow import Observer, StepDefinition, WorkflowEngine, WorkflowSnapshot

logger = logging.getLogger(__name__)


CONNECT_WALLET = "connect-wallet"
CHECK_FUNDING = "check-funding"
CREATE_TOKEN = "create-token"
REGISTER_ASSETS = "register-assets"
DISTRIBUTE_TOKENS = "distribute-tokens"

TOKEN_STEPS = (
    StepDefinition(CONNECT_WALLET, "Connect Creator Wallet",
                   "Connecting to the required creator wallet address"),
    StepDefinition(CHECK_FUNDING, "Check/Fund Wallet",
                   "Ensuring wallet has sufficient funds for transactions"),
    StepDefinition(CREATE_TOKEN, "Create Governance Token",
                   "Minting the fungible token on the ledger"),
    StepDefinition(REGISTER_ASSETS, "Register Assets",
                   "Registering token with all recipient wallets"),
    StepDefinition(DISTRIBUTE_TOKENS, "Distribute Tokens",
                   "Sending equal amounts to the fixed wallets"),
)


class Outcome(Enum):
    """What a caller may safely do next."""
    NOTHING_HAPPENED = "nothing_happened"              # safe to retry
    LEDGER_ACTION_POSSIBLE = "ledger_action_possible"  # do not blindly retry
    PARTIALLY_DISTRIBUTED = "partially_distributed"    # inspect entries
    COMPLETED = "completed"


@dataclass(frozen=True)
class TokenCreationParams:
    """User-approved token creation request."""
    dao_name: str
    token_name: str
    token_symbol: str
    initial_supply: int
    token_description: str = ""
    icon_url: Optional[str] = None
    project_url: Optional[str] = None


@dataclass
class TokenCreationResult:
    """
    Final report of one token creation run.

    ``success`` is True only when every transfer succeeded. A completed
    workflow with failed transfers reports ``PARTIALLY_DISTRIBUTED``.
    """
    success: bool
    outcome: Outcome
    token_reference: Optional[str] = None
    creation_tx_reference: Optional[str] = None
    distribution_result: Optional[DistributionResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_step: Optional[str] = None
    identity_check: Optional[IdentityCheck] = None
    simulated: bool = False
    snapshots: Tuple[WorkflowSnapshot, ...] = ()

    @property
    def safe_to_retry(self) -> bool:
        return self.outcome == Outcome.NOTHING_HAPPENED

    @property
    def final_snapshot(self) -> Optional[WorkflowSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "token_reference": self.token_reference,
            "creation_tx_reference": self.creation_tx_reference,
            "distribution": self.distribution_result.to_dict() if self.distribution_result else None,
            "error": self.error,
            "error_code": self.error_code,
            "failed_step": self.failed_step,
            "simulated": self.simulated,
            "steps": self.final_snapshot.to_dict()["steps"] if self.final_snapshot else [],
        }


@dataclass
class _RunState:
    """Mutable facts about one run, local to that run."""
    address: Optional[str] = None
    identity_check: Optional[IdentityCheck] = None
    create_submitted: bool = False
    submitted: Optional[TokenCreation] = None   # sent, not yet confirmed
    creation: Optional[TokenCreation] = None    # confirmed
    distribution: Optional[DistributionResult] = None
    simulated: bool = False


class TokenCreationOrchestrator:
    """
    Drives the five-step token workflow against a ledger.

    The orchestrator holds only immutable settings; every call gets its own
    workflow engine and wallet session, so concurrent calls for different
    users never share step state.

    Usage:
        orchestrator = TokenCreationOrchestrator(ledger, required_address, wallets)
        result = await orchestrator.create_and_distribute_token(params, wallet)
    """

    def __init__(
        self,
        ledger: Ledger,
        required_address: str,
        recipients: Sequence[str],
        decimals: int = 6,
        ledger_timeout: Optional[float] = 60.0,
        allow_simulated: bool = False,
    ):
        if ledger.simulated and not allow_simulated:
            raise ValueError("Simulated ledger requires allow_simulated=True")
        self.ledger = ledger
        self.required_address = required_address
        self.recipients: Tuple[str, ...] = tuple(recipients)
        self.decimals = decimals
        self.ledger_timeout = ledger_timeout

    # ------------------------------------------------------------------
    # Helpers exposed to callers
    # ------------------------------------------------------------------

    def initial_steps(self) -> Tuple[StepDefinition, ...]:
        return TOKEN_STEPS

    def preview(self, total_supply: int) -> DistributionPlan:
        """Distribution plan for a supply, without touching the ledger."""
        return distribution.plan(total_supply, self.recipients)

    def build_token_config(self, params: TokenCreationParams) -> TokenConfig:
        """Validate params and build the ledger token config."""
        if not params.token_name or not params.token_symbol:
            raise ValueError("Missing required token parameters: name, symbol")
        if isinstance(params.initial_supply, bool) or not isinstance(params.initial_supply, int):
            raise ValueError("Initial supply must be an integer")
        if params.initial_supply <= 0:
            raise ValueError("Initial supply must be greater than 0")

        return TokenConfig(
            name=params.token_name,
            symbol=params.token_symbol.upper(),
            decimals=self.decimals,
            total_supply=params.initial_supply,
            description=params.token_description or f"Governance token for {params.dao_name}",
            icon_uri=params.icon_url,
            project_uri=params.project_url,
        )

    async def verify_distribution(self, token_reference: str) -> Dict[str, Any]:
        """Read back each recipient's balance of a distributed token."""
        results = []
        for address in self.recipients:
            try:
                balance = await self._bounded(self.ledger.get_token_balance(token_reference, address))
                results.append({"address": address, "balance": balance, "has_tokens": balance > 0})
            except (DAOShipError, asyncio.TimeoutError) as e:
                results.append({"address": address, "balance": 0, "has_tokens": False,
                                "error": str(e) or "timeout"})

        with_tokens = sum(1 for r in results if r["has_tokens"])
        return {
            "token_reference": token_reference,
            "total_wallets": len(self.recipients),
            "wallets_with_tokens": with_tokens,
            "all_wallets_have_tokens": with_tokens == len(self.recipients),
            "results": results,
            "simulated": self.ledger.simulated,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def create_and_distribute_token(
        self,
        params: TokenCreationParams,
        wallet: Wallet,
        on_progress: Optional[Observer] = None,
        engine: Optional[WorkflowEngine] = None,
    ) -> TokenCreationResult:
        """
        Run the full workflow for one user.

        Args:
            params: Token request
            wallet: The caller's wallet; connected and disconnected here
            on_progress: Receives the full snapshot after every transition
            engine: Supply one to observe ``snapshots()`` or ``abort()`` it

        Returns:
            TokenCreationResult; this method does not raise for workflow
            failures.
        """
        engine = engine or WorkflowEngine()
        unsubscribe = engine.subscribe(on_progress) if on_progress else None

        try:
            try:
                token_config = self.build_token_config(params)
                plan = self.preview(params.initial_supply)
            except (ValueError, PlanError) as e:
                logger.warning("[orchestrator] invalid request: %s", e)
                code = e.code if isinstance(e, PlanError) else "invalid_params"
                return TokenCreationResult(
                    success=False,
                    outcome=Outcome.NOTHING_HAPPENED,
                    error=e.reason if isinstance(e, PlanError) else str(e),
                    error_code=code,
                )

            state = _RunState(simulated=self.ledger.simulated)
            generation = engine.start(TOKEN_STEPS)
            logger.info("[orchestrator] creating %s (%s) for %s",
                        token_config.name, token_config.symbol, params.dao_name)

            async with WalletSession(wallet) as session:
                try:
                    await self._run(engine, generation, session, token_config, plan, state)
                except WorkflowError as e:
                    return self._failure(e, state, engine)

            return self._success(state, engine)
        finally:
            if unsubscribe:
                unsubscribe()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _bounded(self, awaitable):
        if self.ledger_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, self.ledger_timeout)

    async def _require_identity(self, session: WalletSession, state: _RunState) -> str:
        result = await session.check(self.required_address)
        state.identity_check = result
        if not result.authorized:
            raise IdentityError(
                result.reason,
                result.message(),
                {"required": result.required_identity, "connected": result.connected_identity},
            )
        state.address = result.connected_identity
        return state.address

    async def _confirm(self, tx_reference: str, what: str) -> None:
        confirmation = await self.ledger.wait_for_confirmation(tx_reference)
        if not confirmation.success:
            raise LedgerError(
                LedgerError.REJECTED,
                f"{what} failed: {confirmation.detail or 'transaction failed'}",
                {"tx_reference": tx_reference},
            )

    async def _run(
        self,
        engine: WorkflowEngine,
        generation: int,
        session: WalletSession,
        token_config: TokenConfig,
        plan: DistributionPlan,
        state: _RunState,
    ) -> None:
        timeout = self.ledger_timeout

        await engine.run_step(
            CONNECT_WALLET,
            lambda: self._require_identity(session, state),
            generation,
        )

        async def check_funding():
            funded = await self.ledger.ensure_funded(state.address)
            return "funded from faucet" if funded else "already funded"

        await engine.run_step(CHECK_FUNDING, check_funding, generation, timeout=timeout)

        async def create_token():
            # Privileged: the gate is evaluated again, never reused
            creator = await self._require_identity(session, state)
            state.create_submitted = True
            creation = await self.ledger.create_token(token_config, creator)
            state.submitted = creation
            state.simulated = state.simulated or creation.simulated
            await self._confirm(creation.tx_reference, "Token creation")
            state.creation = creation
            logger.info("[orchestrator] token created: %s (tx %s)",
                        creation.asset_reference, creation.tx_reference)
            return creation.asset_reference

        await engine.run_step(CREATE_TOKEN, create_token, generation, timeout=timeout)
        asset = state.creation.asset_reference

        async def register_assets():
            tx_reference = await self.ledger.register_recipients(asset, list(plan.recipients))
            await self._confirm(tx_reference, "Asset registration")
            return tx_reference

        await engine.run_step(REGISTER_ASSETS, register_assets, generation, timeout=timeout)

        async def distribute_tokens():
            sender = await self._require_identity(session, state)
            result = await self._distribute(asset, sender, plan, state.simulated)
            state.distribution = result
            return f"{result.succeeded_count}/{plan.recipient_count} transfers confirmed"

        # Each transfer carries its own timeout inside the step
        await engine.run_step(DISTRIBUTE_TOKENS, distribute_tokens, generation)

    async def _distribute(
        self, asset: str, sender: str, plan: DistributionPlan, simulated: bool
    ) -> DistributionResult:
        result = DistributionResult(plan=plan, simulated=simulated)
        amount = plan.per_recipient_amount

        for i, recipient in enumerate(plan.recipients, start=1):
            tx_reference = None
            try:
                logger.info("[orchestrator] distributing %d to wallet %d/%d: %s",
                            amount, i, plan.recipient_count, recipient)
                tx_reference = await self._bounded(
                    self.ledger.transfer(asset, sender, recipient, amount)
                )
                confirmation = await self._bounded(self.ledger.wait_for_confirmation(tx_reference))
                if confirmation.success:
                    result.record_success(recipient, amount, tx_reference)
                else:
                    result.record_failure(recipient, amount,
                                          confirmation.detail or "Transaction failed", tx_reference)
            except asyncio.TimeoutError:
                # Submitted transfers may still land on the ledger
                result.record_failure(recipient, amount,
                                      f"Timed out after {self.ledger_timeout}s; outcome unknown",
                                      tx_reference)
            except Exception as e:
                logger.error("[orchestrator] failed to distribute to %s: %s", recipient, e)
                result.record_failure(recipient, amount, str(e) or e.__class__.__name__, tx_reference)

        logger.info(
            "[orchestrator] distribution summary: %d/%d succeeded, %d distributed, %d retained",
            result.succeeded_count, plan.recipient_count,
            result.total_distributed, result.retained_by_distributor,
        )
        return result

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _outcome_for_failure(self, step_id: Optional[str], error: WorkflowError,
                             state: _RunState) -> Outcome:
        if state.creation is not None:
            return Outcome.LEDGER_ACTION_POSSIBLE
        if step_id == CREATE_TOKEN and state.create_submitted:
            cause = error.cause
            if isinstance(cause, LedgerError) and cause.code == LedgerError.REJECTED:
                return Outcome.NOTHING_HAPPENED
            # Submitted, outcome unknown
            return Outcome.LEDGER_ACTION_POSSIBLE
        return Outcome.NOTHING_HAPPENED

    def _failure(self, error: WorkflowError, state: _RunState,
                 engine: WorkflowEngine) -> TokenCreationResult:
        step_id = error.step_id
        cause = error.cause
        code = cause.code if isinstance(cause, DAOShipError) else error.code

        outcome = self._outcome_for_failure(step_id, error, state)

        logger.error("[orchestrator] workflow stopped at %s: %s (%s)", step_id, error.reason, outcome.value)
        return TokenCreationResult(
            success=False,
            outcome=outcome,
            token_reference=state.creation.asset_reference if state.creation else None,
            creation_tx_reference=state.submitted.tx_reference if state.submitted else None,
            distribution_result=state.distribution,
            error=cause.reason if isinstance(cause, DAOShipError) else error.reason,
            error_code=code,
            failed_step=step_id,
            identity_check=state.identity_check,
            simulated=state.simulated,
            snapshots=engine.history,
        )

    def _success(self, state: _RunState, engine: WorkflowEngine) -> TokenCreationResult:
        dist = state.distribution
        complete = dist is not None and dist.all_succeeded

        error = None
        if not complete:
            error = f"{dist.failed_count} of {dist.plan.recipient_count} transfers failed"
            logger.warning("[orchestrator] %s", error)

        return TokenCreationResult(
            success=complete,
            outcome=Outcome.COMPLETED if complete else Outcome.PARTIALLY_DISTRIBUTED,
            token_reference=state.creation.asset_reference,
            creation_tx_reference=state.creation.tx_reference,
            distribution_result=dist,
            error=error,
            error_code=None if complete else "partial_distribution",
            identity_check=state.identity_check,
            simulated=state.simulated,
            snapshots=engine.history,
        )
