"""
Tests for out-of-band usage commit reconciliation.
"""

import pytest

from src.services.client_identity import AuthenticatedIdentity
from src.services.usage_ledger import ModelType, ProfileSnapshot, UsageLedger
from src.services.usage_reconciler import PendingCommit, UsageReconciler
from src.utils.exceptions import PersistenceError


def make_pending(user_id: str) -> PendingCommit:
    identity = AuthenticatedIdentity(user_id)
    decision = UsageLedger().evaluate(identity, ProfileSnapshot(), ModelType.QUICK)
    return PendingCommit(identity, ModelType.QUICK, decision)


class TestUsageReconciler:
    @pytest.mark.asyncio
    async def test_successful_pass_drains_queue(self):
        reconciler = UsageReconciler()
        applied = []

        async def apply(pending):
            applied.append(pending.identity.user_id)

        await reconciler.enqueue(make_pending("u1"))
        await reconciler.enqueue(make_pending("u2"))
        assert await reconciler.pending_count() == 2

        assert await reconciler.run_once(apply) == 2
        assert applied == ["u1", "u2"]
        assert await reconciler.pending_count() == 0

    @pytest.mark.asyncio
    async def test_failed_commit_is_retried_then_dropped(self):
        reconciler = UsageReconciler(max_attempts=2)

        async def apply(pending):
            raise PersistenceError("still down")

        pending = make_pending("u1")
        await reconciler.enqueue(pending)

        assert await reconciler.run_once(apply) == 0
        assert pending.attempts == 1
        assert await reconciler.pending_count() == 1

        assert await reconciler.run_once(apply) == 0
        assert pending.attempts == 2
        assert await reconciler.pending_count() == 0

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_only_failures(self):
        reconciler = UsageReconciler()

        async def apply(pending):
            if pending.identity.user_id == "bad":
                raise PersistenceError("conflict storm")

        for user_id in ("ok-1", "bad", "ok-2"):
            await reconciler.enqueue(make_pending(user_id))

        assert await reconciler.run_once(apply) == 2
        assert await reconciler.pending_count() == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_requeues_unsettled(self):
        reconciler = UsageReconciler()

        async def apply(pending):
            raise RuntimeError("bug")

        await reconciler.enqueue(make_pending("u1"))
        await reconciler.enqueue(make_pending("u2"))
        with pytest.raises(RuntimeError):
            await reconciler.run_once(apply)
        assert await reconciler.pending_count() == 2

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        reconciler = UsageReconciler(max_size=2)
        for user_id in ("u1", "u2", "u3"):
            await reconciler.enqueue(make_pending(user_id))

        seen = []

        async def apply(pending):
            seen.append(pending.identity.user_id)

        await reconciler.run_once(apply)
        assert seen == ["u2", "u3"]
