"""
Out-of-band reconciliation of usage commits.

When persisting usage fails after the user already received their image,
the commit is queued here instead of surfacing an error. A background task
retries queued commits; each retry re-reads the stored counters and
recomputes the delta, so a retry never applies a stale result. The commit id
travels with the entry, and storage that already recorded it counts nothing.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from src.config import usage_limits
from src.db.anonymous_usage import UsageSignals
from src.services.client_identity import Identity
from src.services.prometheus_metrics import usage_commits
from src.services.usage_ledger import ModelType, UsageDecision
from src.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class PendingCommit:
    identity: Identity
    model_type: ModelType
    decision: UsageDecision
    signals: UsageSignals = field(default_factory=UsageSignals)
    commit_id: str | None = None
    attempts: int = 0
    first_failed_at: float = field(default_factory=time.time)


class UsageReconciler:
    def __init__(
        self,
        max_size: int = usage_limits.RECONCILE_QUEUE_SIZE,
        max_attempts: int = usage_limits.RECONCILE_MAX_ATTEMPTS,
    ):
        self.max_size = max_size
        self.max_attempts = max_attempts
        self._queue: deque[PendingCommit] = deque()
        self._lock = asyncio.Lock()

    async def enqueue(self, pending: PendingCommit) -> None:
        async with self._lock:
            if len(self._queue) >= self.max_size:
                dropped = self._queue.popleft()
                usage_commits.labels(status="dropped").inc()
                logger.error(
                    f"Reconciliation queue full, dropping pending commit for {dropped.identity}"
                )
            self._queue.append(pending)
        usage_commits.labels(status="queued").inc()

    async def pending_count(self) -> int:
        async with self._lock:
            return len(self._queue)

    async def run_once(self, apply: Callable[[PendingCommit], Awaitable[object]]) -> int:
        """
        Retry every queued commit once.

        Returns:
            Number of commits successfully reconciled
        """
        async with self._lock:
            batch = list(self._queue)
            self._queue.clear()

        reconciled = 0
        retry: list[PendingCommit] = []
        remaining = deque(batch)
        try:
            while remaining:
                pending = remaining[0]
                pending.attempts += 1
                try:
                    await apply(pending)
                except PersistenceError as e:
                    remaining.popleft()
                    if pending.attempts >= self.max_attempts:
                        usage_commits.labels(status="dropped").inc()
                        logger.error(
                            f"Giving up on usage commit for {pending.identity} after "
                            f"{pending.attempts} attempts: {e}"
                        )
                    else:
                        retry.append(pending)
                    continue
                remaining.popleft()
                reconciled += 1
                usage_commits.labels(status="reconciled").inc()
                logger.info(f"Reconciled usage commit for {pending.identity}")
        finally:
            # Anything not yet settled goes back to the front of the queue
            unsettled = retry + [p for p in remaining if p.attempts < self.max_attempts]
            if unsettled:
                async with self._lock:
                    self._queue.extendleft(reversed(unsettled))
        return reconciled

    async def run_forever(
        self,
        apply: Callable[[PendingCommit], Awaitable[object]],
        interval_seconds: float = usage_limits.RECONCILE_INTERVAL_SECONDS,
    ) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            if not await self.pending_count():
                continue
            try:
                await self.run_once(apply)
            except Exception as e:
                logger.exception(f"Usage reconciliation pass failed: {e}")
