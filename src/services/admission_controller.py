"""
Admission controller.

Runs the admission guards in a fixed order and produces one decision per
generation request:

    privileged bypass -> global capacity -> suspicious activity -> quota

Each guard can only deny. An admitted result carries a commit callback
bound to the decision; the caller invokes it after the generation has
succeeded and never otherwise.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.config import usage_limits
from src.config.config import Config
from src.db.anonymous_usage import UsageSignals
from src.db.profiles import ProfileStore
from src.services.abuse_guard import SuspiciousActivityGuard
from src.services.anonymous_identity_store import AnonymousIdentityStore
from src.services.client_identity import (
    AnonymousIdentity,
    AuthenticatedIdentity,
    ClientIdentity,
    Identity,
    mint_anon_id,
)
from src.services.global_capacity_guard import CapacitySnapshot, GlobalCapacityGuard
from src.services.privileged_bypass import BypassKind, PrivilegedBypass
from src.services.prometheus_metrics import credits_debited, record_admission, usage_commits
from src.services.usage_ledger import (
    ModelType,
    PaymentType,
    ProfileSnapshot,
    UsageDecision,
    UsageDelta,
    UsageLedger,
    UsageRecord,
)
from src.services.usage_reconciler import PendingCommit, UsageReconciler
from src.utils.exceptions import AbuseDetected, CapacityExceeded, PersistenceError, QuotaExceeded
from src.utils.ip_utils import hash_signal, ip_prefix, mask_ip
from src.utils.rate_limit_headers import get_rate_limit_headers

logger = logging.getLogger(__name__)


class AdmissionState(str, Enum):
    EVALUATING = "evaluating"
    ADMITTED = "admitted"
    DENIED = "denied"


class DenialReason(str, Enum):
    GLOBAL_CAPACITY_EXCEEDED = "global_capacity_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class AdmissionConfig:
    upgrade_url: str = "/pricing"
    max_commit_attempts: int = usage_limits.MAX_COMMIT_ATTEMPTS

    @classmethod
    def from_config(cls) -> "AdmissionConfig":
        return cls(upgrade_url=Config.UPGRADE_URL)


@dataclass(frozen=True)
class AdmissionRequest:
    client: ClientIdentity
    model_type: ModelType
    headers: Mapping[str, str] = field(default_factory=dict)
    path: str = ""


CommitCallback = Callable[[], Awaitable[dict[str, Any] | None]]


@dataclass
class AdmissionResult:
    state: AdmissionState
    model_type: ModelType
    reason: DenialReason | None = None
    decision: UsageDecision | None = None
    capacity: CapacitySnapshot | None = None
    bypass: BypassKind | None = None
    minted_anon_id: str | None = None
    commit_id: str | None = None
    retry_after: int | None = None
    upgrade_url: str = "/pricing"
    _commit: CommitCallback | None = field(default=None, repr=False)
    _committed: bool = field(default=False, repr=False)

    @property
    def admitted(self) -> bool:
        return self.state is AdmissionState.ADMITTED

    @property
    def metered(self) -> bool:
        return self._commit is not None

    @classmethod
    def unmetered(cls, model_type: ModelType) -> "AdmissionResult":
        """Admit without any accounting (outermost fail-open path)"""
        return cls(state=AdmissionState.ADMITTED, model_type=model_type)

    def response_headers(self) -> dict[str, str]:
        if self.capacity is None:
            return {}
        return get_rate_limit_headers(
            self.capacity, denied=self.reason is DenialReason.GLOBAL_CAPACITY_EXCEEDED
        )

    def raise_for_denial(self, extra_headers: Mapping[str, str] | None = None) -> None:
        """Raise the domain exception matching the denial reason."""
        if self.admitted:
            return
        headers = {**self.response_headers(), **(extra_headers or {})}
        if self.reason is DenialReason.GLOBAL_CAPACITY_EXCEEDED:
            raise CapacityExceeded(self.capacity, headers)
        if self.reason is DenialReason.SUSPICIOUS_ACTIVITY:
            raise AbuseDetected(self.retry_after or 1, extra_headers)
        raise QuotaExceeded(self.decision, self.upgrade_url, headers)

    async def commit(self) -> dict[str, Any] | None:
        """
        Record usage for a successful generation.

        Must be called at most once, and only after the downstream call
        reported success. Returns the usage block for the response.
        """
        if not self.admitted:
            raise RuntimeError("Cannot commit usage for a denied request")
        if self._committed:
            raise RuntimeError("Usage already committed for this admission")
        self._committed = True
        if self._commit is None:
            return None
        return await self._commit()


class AdmissionController:
    """
    Orchestrates the admission guards.

    All collaborators are injected so tests can substitute in-memory stores
    and clocks.
    """

    def __init__(
        self,
        *,
        ledger: UsageLedger,
        global_guard: GlobalCapacityGuard,
        abuse_guard: SuspiciousActivityGuard,
        bypass: PrivilegedBypass,
        profile_store: ProfileStore,
        anon_store: AnonymousIdentityStore,
        reconciler: UsageReconciler | None = None,
        config: AdmissionConfig | None = None,
    ):
        self.ledger = ledger
        self.global_guard = global_guard
        self.abuse_guard = abuse_guard
        self.bypass = bypass
        self.profile_store = profile_store
        self.anon_store = anon_store
        self.reconciler = reconciler or UsageReconciler()
        self.config = config or AdmissionConfig()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def _load_snapshot(
        self, client: ClientIdentity
    ) -> tuple[Identity, ProfileSnapshot, str | None]:
        """
        Load the freshest counters for the request's identity.

        Mints and registers an anonymous id when an unauthenticated client
        has none. Raises PersistenceError if the stores can't be read.
        """
        if client.user_id is not None:
            row = await asyncio.to_thread(self.profile_store.get_profile, client.user_id)
            return AuthenticatedIdentity(client.user_id), ProfileSnapshot.from_row(row), None

        minted = None
        anon_id = client.anon_id
        if anon_id is None:
            anon_id = mint_anon_id()
            usage = await asyncio.to_thread(self.anon_store.register, anon_id)
            minted = anon_id
        else:
            usage = await asyncio.to_thread(self.anon_store.get, anon_id)

        snapshot = ProfileSnapshot.anonymous(
            usage.quick_count, usage.premium_count, usage.window_resets_at()
        )
        return AnonymousIdentity(anon_id), snapshot, minted

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _deny(
        self, result: AdmissionResult, reason: DenialReason, client: ClientIdentity
    ) -> AdmissionResult:
        result.state = AdmissionState.DENIED
        result.reason = reason
        record_admission("denied", reason.value)
        logger.warning(f"Generation denied ({reason.value}) for {mask_ip(client.source_ip)}")
        return result

    async def precheck_capacity(self, request: AdmissionRequest) -> AdmissionResult | None:
        """
        Deny up front when the global window is already full.

        Takes no slot and touches no usage state. Returns a DENIED result, or
        None when the request should go through full admission.
        """
        if self.bypass.qualifies(request.headers):
            return None
        capacity = await self.global_guard.snapshot()
        if capacity.allowed:
            return None
        result = AdmissionResult(
            state=AdmissionState.EVALUATING,
            model_type=ModelType(request.model_type),
            capacity=capacity,
            upgrade_url=self.config.upgrade_url,
        )
        return self._deny(result, DenialReason.GLOBAL_CAPACITY_EXCEEDED, request.client)

    async def admit(self, request: AdmissionRequest) -> AdmissionResult:
        """
        Decide whether a generation request may proceed.

        Returns:
            AdmissionResult in state ADMITTED (with commit callback) or DENIED

        Raises:
            PersistenceError: If the quota pre-check can't read usage state
        """
        client = request.client
        model_type = ModelType(request.model_type)
        result = AdmissionResult(
            state=AdmissionState.EVALUATING,
            model_type=model_type,
            upgrade_url=self.config.upgrade_url,
        )

        bypass = self.bypass.check(request.headers, request.path)
        if bypass is not None:
            result.state = AdmissionState.ADMITTED
            result.bypass = bypass
            result.decision = self.ledger.evaluate(
                client.identity, ProfileSnapshot(), model_type, tier=bypass.tier
            )
            record_admission("admitted", f"bypass_{bypass.value}")
            decision = result.decision

            async def _privileged_commit() -> dict[str, Any]:
                return decision.to_usage_block(credits_used=0)

            result._commit = _privileged_commit
            return result

        capacity = await self.global_guard.try_acquire()
        result.capacity = capacity
        if not capacity.allowed:
            return self._deny(result, DenialReason.GLOBAL_CAPACITY_EXCEEDED, client)

        abuse = await self.abuse_guard.check(client.source_ip)
        if not abuse.allowed:
            await self.global_guard.release(capacity.window_start)
            result.retry_after = abuse.retry_after
            return self._deny(result, DenialReason.SUSPICIOUS_ACTIVITY, client)

        try:
            identity, snapshot, minted = await self._load_snapshot(client)
        except PersistenceError:
            await self.global_guard.release(capacity.window_start)
            record_admission("error", "usage_unavailable")
            raise
        result.minted_anon_id = minted

        decision = self.ledger.evaluate(identity, snapshot, model_type)
        result.decision = decision
        if not decision.can_proceed:
            await self.global_guard.release(capacity.window_start)
            return self._deny(result, DenialReason.QUOTA_EXCEEDED, client)

        result.state = AdmissionState.ADMITTED
        record_admission("admitted", decision.payment_method.type.value)
        commit_id = uuid.uuid4().hex
        result.commit_id = commit_id
        signals = UsageSignals(
            ip_prefix=ip_prefix(client.source_ip), ua_hash=hash_signal(client.user_agent)
        )

        async def _commit() -> dict[str, Any]:
            return await self._commit_usage(
                identity, snapshot, model_type, decision, signals, commit_id
            )

        result._commit = _commit
        return result

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _persist(
        self,
        identity: Identity,
        model_type: ModelType,
        decision: UsageDecision,
        signals: UsageSignals,
        commit_id: str | None = None,
    ) -> tuple[UsageDelta | None, UsageRecord]:
        """
        Apply one generation's usage to durable storage, recomputing from fresh state.

        ``commit_id`` makes the write idempotent: if storage already recorded
        it (an earlier attempt landed but its response was lost) nothing is
        applied and the delta is None.
        """
        if isinstance(identity, AuthenticatedIdentity):
            for attempt in range(1, self.config.max_commit_attempts + 1):
                row = await asyncio.to_thread(self.profile_store.get_profile, identity.user_id)
                snapshot = ProfileSnapshot.from_row(row)
                if snapshot.already_committed(commit_id):
                    logger.info(f"Usage commit {commit_id} for {identity} already recorded")
                    return None, snapshot.usage
                delta = self.ledger.commit(
                    identity, snapshot, model_type, decision, commit_id=commit_id
                )
                applied = await asyncio.to_thread(
                    self.profile_store.apply_usage_delta, identity.user_id, delta
                )
                if applied:
                    return delta, delta.result
                logger.info(
                    f"Concurrent usage update for {identity}, retrying commit "
                    f"({attempt}/{self.config.max_commit_attempts})"
                )
            raise PersistenceError(
                f"Usage commit for {identity} lost {self.config.max_commit_attempts} races"
            )

        # Anonymous counters are incremented atomically by the store itself
        usage = await asyncio.to_thread(self.anon_store.get, identity.anon_id)
        snapshot = ProfileSnapshot.anonymous(
            usage.quick_count, usage.premium_count, usage.window_resets_at()
        )
        delta = self.ledger.commit(identity, snapshot, model_type, decision)
        stored = await asyncio.to_thread(
            self.anon_store.record, identity.anon_id, model_type.value, signals, commit_id
        )
        record = ProfileSnapshot.anonymous(
            stored.quick_count, stored.premium_count, stored.window_resets_at()
        ).usage
        return delta, record

    async def _commit_usage(
        self,
        identity: Identity,
        snapshot: ProfileSnapshot,
        model_type: ModelType,
        decision: UsageDecision,
        signals: UsageSignals,
        commit_id: str | None = None,
    ) -> dict[str, Any]:
        try:
            delta, record = await self._persist(
                identity, model_type, decision, signals, commit_id
            )
        except PersistenceError as e:
            # The user already has their image; settle the books later
            usage_commits.labels(status="failed").inc()
            logger.error(f"Usage commit failed for {identity}, queued for reconciliation: {e}")
            await self.reconciler.enqueue(
                PendingCommit(identity, model_type, decision, signals, commit_id=commit_id)
            )
            projected = self.ledger.commit(identity, snapshot, model_type, decision)
            report = self.ledger.report(decision.tier, projected.result, model_type)
            return report.to_usage_block(credits_used=projected.credits_used)

        usage_commits.labels(status="persisted").inc()
        credits_used = delta.credits_used if delta is not None else 0
        if delta is not None and delta.payment_method.type is PaymentType.CREDIT:
            credits_debited.labels(model_type=model_type.value).inc(credits_used)
        report = self.ledger.report(decision.tier, record, model_type)
        return report.to_usage_block(credits_used=credits_used)

    async def reconcile_pending(self, pending: PendingCommit) -> None:
        await self._persist(
            pending.identity,
            pending.model_type,
            pending.decision,
            pending.signals,
            pending.commit_id,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def describe_usage(self, client: ClientIdentity) -> tuple[UsageDecision, str | None]:
        """
        Current usage for a client without charging anything.

        A client without an anonymous id gets a fresh one for its cookie, but
        no row is written: this path runs no guards, and the first counted
        generation creates the row.

        Returns:
            (decision for a quick generation, newly minted anon id or None)
        """
        if client.user_id is None and client.anon_id is None:
            anon_id = mint_anon_id()
            decision = self.ledger.evaluate(
                AnonymousIdentity(anon_id), ProfileSnapshot(), ModelType.QUICK
            )
            return decision, anon_id

        identity, snapshot, minted = await self._load_snapshot(client)
        return self.ledger.evaluate(identity, snapshot, ModelType.QUICK), minted
