"""
Resilient Persistence
=====================
Local system-of-record access with bounded retries.

Only idempotent operations (reads and merge-writes) go through
``retry_idempotent``. Ledger mutations must never be retried here: a
repeated transfer is a second transfer.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.5


def doubling_backoff(base_delay: float = DEFAULT_BASE_DELAY) -> Callable[[int], float]:
    """Delay before retry ``n`` (1-based): base, 2*base, 4*base, ..."""
    def delay(attempt: int) -> float:
        return base_delay * (2 ** (attempt - 1))
    return delay


async def retry_idempotent(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff: Optional[Callable[[int], float]] = None,
    description: str = "store operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run an idempotent async operation, retrying failures with backoff.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        max_attempts: Total attempts including the first
        backoff: Maps the failed attempt number to a delay in seconds
        description: Used in logs and the final error
        sleep: Injected for tests

    Raises:
        PersistenceError(UNRECOVERABLE) after the last failed attempt
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    backoff = backoff or doubling_backoff()
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if attempt == max_attempts:
                break
            delay = backoff(attempt)
            logger.warning(
                "[store] %s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, max_attempts, e, delay,
            )
            await sleep(delay)

    logger.error("[store] %s failed after %d attempts: %s", description, max_attempts, last_error)
    raise PersistenceError(
        PersistenceError.UNRECOVERABLE,
        f"{description} failed after {max_attempts} attempts",
        {"last_error": str(last_error)},
    ) from last_error


class Store(ABC):
    """Document store accessed by key."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Record for key, or None."""

    @abstractmethod
    async def put(self, key: str, record: Dict[str, Any], merge: bool = True) -> None:
        """Write a record; ``merge`` updates fields instead of replacing."""


class InMemoryStore(Store):
    """Dictionary-backed store."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, key: str, record: Dict[str, Any], merge: bool = True) -> None:
        if merge and key in self.records:
            self.records[key].update(copy.deepcopy(record))
        else:
            self.records[key] = copy.deepcopy(record)


class JsonFileStore(Store):
    """
    Store persisted as a single JSON document on disk.

    The whole file is rewritten on every put; fine for the handful of DAOs
    an operator manages from the CLI.
    """

    def __init__(self, path: str = "data/daoship.json"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text())
        return data.get("records", {})

    def _save(self, records: Dict[str, Dict[str, Any]]) -> None:
        data = {
            "records": records,
            "updated_at": datetime.now().isoformat(),
        }
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str))
        tmp.replace(self.path)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._load().get(key)

    async def put(self, key: str, record: Dict[str, Any], merge: bool = True) -> None:
        async with self._lock:
            records = self._load()
            if merge and key in records:
                records[key].update(record)
            else:
                records[key] = record
            self._save(records)


class ResilientStore:
    """Wraps a Store so reads and merge-writes retry with doubling backoff."""

    def __init__(
        self,
        store: Store,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.backoff = doubling_backoff(base_delay)
        self._sleep = sleep

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await retry_idempotent(
            lambda: self.store.get(key),
            self.max_attempts,
            self.backoff,
            description=f"read {key}",
            sleep=self._sleep,
        )

    async def merge(self, key: str, record: Dict[str, Any]) -> None:
        """Merge-write: safe to repeat, so safe to retry."""
        await retry_idempotent(
            lambda: self.store.put(key, record, merge=True),
            self.max_attempts,
            self.backoff,
            description=f"merge {key}",
            sleep=self._sleep,
        )
