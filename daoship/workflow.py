"""
Step Workflow Engine
====================
Runs an ordered list of named steps, one at a time, and publishes an
immutable snapshot of every step after each transition.

Step lifecycle:     pending -> running -> succeeded | failed
Workflow lifecycle: idle -> in_progress -> completed | failed | aborted

Rules:
1. Steps run strictly in order; only the next pending step may start
2. Once a step fails, no later step runs
3. ``start()`` opens a new generation; anything still resolving from an
   older generation is ignored
4. ``abort()`` stops new steps from starting. It cannot undo a ledger
   operation that was already submitted
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import WorkflowError

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WorkflowStatus(Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED)


@dataclass(frozen=True)
class StepDefinition:
    """A step as declared by the caller."""
    id: str
    title: str
    description: str = ""


@dataclass(frozen=True)
class WorkflowStep:
    """State of one step inside a snapshot."""
    id: str
    title: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    result_ref: Optional[str] = None
    error_detail: Optional[str] = None


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Full workflow state after one transition."""
    generation: int
    status: WorkflowStatus
    steps: Tuple[WorkflowStep, ...]

    def step(self, step_id: str) -> WorkflowStep:
        for s in self.steps:
            if s.id == step_id:
                return s
        raise KeyError(step_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step(self) -> Optional[WorkflowStep]:
        for s in self.steps:
            if s.status == StepStatus.RUNNING:
                return s
        return None

    @property
    def failed_step(self) -> Optional[WorkflowStep]:
        for s in self.steps:
            if s.status == StepStatus.FAILED:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "status": self.status.value,
            "steps": [
                {
                    "id": s.id,
                    "title": s.title,
                    "status": s.status.value,
                    "result_ref": s.result_ref,
                    "error_detail": s.error_detail,
                }
                for s in self.steps
            ],
        }


Observer = Callable[[WorkflowSnapshot], None]

# Marks the end of a snapshot stream
_END = None


def _default_ref(result: Any) -> Optional[str]:
    if isinstance(result, str):
        return result
    return getattr(result, "result_ref", None)


class WorkflowEngine:
    """
    Sequential step runner with observable, immutable snapshots.

    Usage:
        engine = WorkflowEngine()
        engine.subscribe(print)
        gen = engine.start([StepDefinition("a", "Step A"), ...])
        await engine.run_step("a", do_a)
    """

    def __init__(self):
        self._generation = 0
        self._status = WorkflowStatus.IDLE
        self._steps: Tuple[WorkflowStep, ...] = ()
        self._running: Optional[str] = None
        self._observers: List[Observer] = []
        self._history: List[WorkflowSnapshot] = []
        self._streams: List[asyncio.Queue] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def status(self) -> WorkflowStatus:
        return self._status

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(self._generation, self._status, self._steps)

    @property
    def history(self) -> Tuple[WorkflowSnapshot, ...]:
        """Every snapshot emitted for the current generation."""
        return tuple(self._history)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def snapshots(self) -> AsyncIterator[WorkflowSnapshot]:
        """
        Lazily yield the snapshots of the current generation, starting with
        those already emitted, ending after the terminal snapshot (or when a
        newer generation starts).
        """
        queue: asyncio.Queue = asyncio.Queue()
        for snap in self._history:
            queue.put_nowait(snap)
        if self._history and self._history[-1].is_terminal:
            queue.put_nowait(_END)
        self._streams.append(queue)

        try:
            while True:
                snap = await queue.get()
                if snap is _END:
                    return
                yield snap
                if snap.is_terminal:
                    return
        finally:
            if queue in self._streams:
                self._streams.remove(queue)

    def _emit(self) -> None:
        snap = self.snapshot()
        self._history.append(snap)

        for observer in list(self._observers):
            try:
                observer(snap)
            except Exception:
                logger.exception("[workflow] observer failed")

        for queue in self._streams:
            queue.put_nowait(snap)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, steps: Sequence[StepDefinition]) -> int:
        """
        Begin a new generation with every step pending.

        Returns:
            The new generation number; pass it to ``run_step`` so a
            superseded run cannot touch the new one.
        """
        ids = [s.id for s in steps]
        if len(set(ids)) != len(ids):
            raise ValueError("Step ids must be unique within a workflow")

        # Close streams of the superseded generation
        for queue in self._streams:
            queue.put_nowait(_END)
        self._streams = []

        self._generation += 1
        self._status = WorkflowStatus.IN_PROGRESS if steps else WorkflowStatus.COMPLETED
        self._steps = tuple(WorkflowStep(s.id, s.title, s.description) for s in steps)
        self._running = None
        self._history = []

        logger.debug("[workflow] generation %d started with %d steps", self._generation, len(steps))
        self._emit()
        return self._generation

    def abort(self, reason: str = "aborted") -> None:
        """Stop any further step from starting in the current generation."""
        if self._status in TERMINAL_STATUSES:
            return
        logger.info("[workflow] generation %d aborted: %s", self._generation, reason)
        self._status = WorkflowStatus.ABORTED
        self._emit()

    def _update(self, step_id: str, **changes: Any) -> None:
        self._steps = tuple(
            replace(s, **changes) if s.id == step_id else s for s in self._steps
        )

    def _next_pending(self) -> Optional[WorkflowStep]:
        for s in self._steps:
            if s.status == StepStatus.PENDING:
                return s
        return None

    def _check_can_run(self, step_id: str, generation: int) -> None:
        if generation != self._generation or self._status == WorkflowStatus.ABORTED:
            raise WorkflowError(
                WorkflowError.ABORTED,
                "Workflow was aborted or restarted",
                {"step_id": step_id},
            )
        if self._status == WorkflowStatus.FAILED:
            failed = self.snapshot().failed_step
            raise WorkflowError(
                WorkflowError.WORKFLOW_HALTED,
                f"Step {failed.id if failed else '?'} failed; no later step may run",
                {"step_id": step_id},
            )
        if self._status != WorkflowStatus.IN_PROGRESS:
            raise WorkflowError(
                WorkflowError.NOT_NEXT_STEP,
                f"Workflow is {self._status.value}",
                {"step_id": step_id},
            )
        if self._running is not None:
            raise WorkflowError(
                WorkflowError.NOT_NEXT_STEP,
                f"Step {self._running} is still running",
                {"step_id": step_id},
            )
        nxt = self._next_pending()
        if nxt is None or nxt.id != step_id:
            raise WorkflowError(
                WorkflowError.NOT_NEXT_STEP,
                f"Step {step_id} is not the next pending step",
                {"step_id": step_id, "next": nxt.id if nxt else None},
            )

    def _fail(self, generation: int, step_id: str, detail: str) -> None:
        if generation != self._generation:
            logger.debug("[workflow] ignoring failure of %s from generation %d", step_id, generation)
            return
        self._running = None
        self._update(step_id, status=StepStatus.FAILED, error_detail=detail)
        if self._status == WorkflowStatus.IN_PROGRESS:
            self._status = WorkflowStatus.FAILED
        logger.warning("[workflow] step %s failed: %s", step_id, detail)
        self._emit()

    async def run_step(
        self,
        step_id: str,
        action: Callable[[], Awaitable[Any]],
        generation: Optional[int] = None,
        timeout: Optional[float] = None,
        describe: Callable[[Any], Optional[str]] = _default_ref,
    ) -> Any:
        """
        Run the next pending step.

        Args:
            step_id: Must be the next pending step
            action: Zero-argument coroutine factory doing the step's work
            generation: Generation returned by ``start``; defaults to current
            timeout: Seconds before the step fails with TIMEOUT
            describe: Maps the action's result to the step's ``result_ref``

        Returns:
            Whatever ``action`` returned.

        Raises:
            WorkflowError: NOT_NEXT_STEP / WORKFLOW_HALTED / ABORTED before
            running; STEP_FAILED or TIMEOUT when the action fails.
        """
        gen = self._generation if generation is None else generation
        self._check_can_run(step_id, gen)

        self._running = step_id
        self._update(step_id, status=StepStatus.RUNNING)
        self._emit()

        try:
            if timeout is not None:
                result = await asyncio.wait_for(action(), timeout)
            else:
                result = await action()
        except asyncio.TimeoutError as e:
            if timeout is None:
                # Raised by the action itself, not by wait_for
                self._fail(gen, step_id, str(e) or e.__class__.__name__)
                raise WorkflowError(
                    WorkflowError.STEP_FAILED,
                    str(e) or e.__class__.__name__,
                    {"step_id": step_id, "cause": e},
                ) from e
            err = WorkflowError(
                WorkflowError.TIMEOUT,
                f"Step {step_id} timed out after {timeout}s",
                {"step_id": step_id, "timeout": timeout},
            )
            self._fail(gen, step_id, str(err))
            raise err from e
        except asyncio.CancelledError:
            self._fail(gen, step_id, "cancelled")
            raise
        except Exception as e:
            self._fail(gen, step_id, str(e) or e.__class__.__name__)
            raise WorkflowError(
                WorkflowError.STEP_FAILED,
                str(e) or e.__class__.__name__,
                {"step_id": step_id, "cause": e},
            ) from e

        if gen != self._generation:
            logger.info("[workflow] step %s resolved after generation %d was superseded", step_id, gen)
            raise WorkflowError(
                WorkflowError.ABORTED,
                "Workflow was restarted while the step ran",
                {"step_id": step_id, "result": result},
            )
        self._running = None

        self._update(step_id, status=StepStatus.SUCCEEDED, result_ref=describe(result))
        if self._status == WorkflowStatus.IN_PROGRESS and self._next_pending() is None:
            self._status = WorkflowStatus.COMPLETED
        self._emit()
        return result
