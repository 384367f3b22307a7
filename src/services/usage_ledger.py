"""
Usage ledger: per-identity counters and the arithmetic that prices a request.

The ledger never talks to storage. ``evaluate`` decides whether a request is
payable from a profile snapshot supplied by the caller, and ``commit`` turns
a successful generation into a UsageDelta that a persistence layer applies
atomically. The same arithmetic therefore works whether the increment is
applied in-process or inside the database.
"""

import calendar
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from src.config import usage_limits
from src.config.tiers import Tier, TierPolicy, tier_policy
from src.services.client_identity import AnonymousIdentity, AuthenticatedIdentity, Identity
from src.utils.exceptions import InsufficientCredits

logger = logging.getLogger(__name__)


class ModelType(str, Enum):
    QUICK = "quick"
    PREMIUM = "premium"


CREDIT_COSTS: Mapping[ModelType, int] = {
    ModelType.QUICK: usage_limits.QUICK_CREDIT_COST,
    ModelType.PREMIUM: usage_limits.PREMIUM_CREDIT_COST,
}


class PaymentType(str, Enum):
    FREE_COUNT = "freeCount"
    CREDIT = "credit"


@dataclass(frozen=True)
class PaymentMethod:
    type: PaymentType
    credit_cost: int = 0

    @classmethod
    def free_count(cls) -> "PaymentMethod":
        return cls(PaymentType.FREE_COUNT, 0)

    @classmethod
    def credit(cls, cost: int) -> "PaymentMethod":
        return cls(PaymentType.CREDIT, cost)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "creditCost": self.credit_cost}


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day (Jan 31 -> Feb 28)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def debit_credits(balance: int, amount: int) -> int:
    """
    Return the balance after debiting ``amount``.

    Raises:
        InsufficientCredits: If the debit would take the balance below zero
        ValueError: If amount is negative
    """
    if amount < 0:
        raise ValueError(f"Debit amount must be non-negative, got {amount}")
    if amount > balance:
        raise InsufficientCredits(balance, amount)
    return balance - amount


def remember_commit(
    commit_ids: tuple[str, ...],
    commit_id: str | None,
    keep: int = usage_limits.COMMIT_ID_HISTORY,
) -> tuple[str, ...]:
    """Append ``commit_id`` to the recent ids, keeping the newest ``keep``"""
    if commit_id is None:
        return tuple(commit_ids)
    return (*commit_ids, commit_id)[-keep:]


@dataclass(frozen=True)
class UsageRecord:
    """Counters for one identity, mirroring the durable profile row"""

    lifetime_count: int = 0
    monthly_count: int = 0
    monthly_reset_at: datetime | None = None
    credit_balance: int = 0
    quick_count: int = 0
    premium_count: int = 0

    def __post_init__(self):
        for name in ("lifetime_count", "monthly_count", "credit_balance", "quick_count", "premium_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_profile(cls, row: Mapping[str, Any]) -> "UsageRecord":
        return cls(
            lifetime_count=int(row.get("generation_count") or 0),
            monthly_count=int(row.get("monthly_generation_count") or 0),
            monthly_reset_at=_parse_timestamp(row.get("monthly_reset_at")),
            credit_balance=int(row.get("credit_balance") or 0),
            quick_count=int(row.get("quick_count") or 0),
            premium_count=int(row.get("premium_count") or 0),
        )

    def to_profile_fields(self) -> dict[str, Any]:
        return {
            "generation_count": self.lifetime_count,
            "monthly_generation_count": self.monthly_count,
            "monthly_reset_at": self.monthly_reset_at.isoformat() if self.monthly_reset_at else None,
            "credit_balance": self.credit_balance,
            "quick_count": self.quick_count,
            "premium_count": self.premium_count,
        }

    def count_for(self, model_type: ModelType) -> int:
        return self.quick_count if model_type is ModelType.QUICK else self.premium_count


@dataclass(frozen=True)
class ProfileSnapshot:
    """What the caller knows about an identity at evaluation time"""

    usage: UsageRecord = field(default_factory=UsageRecord)
    subscription_status: str | None = None
    commit_ids: tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any] | None) -> "ProfileSnapshot":
        if not row:
            return cls()
        return cls(
            UsageRecord.from_profile(row),
            row.get("subscription_status"),
            tuple(row.get("recent_commit_ids") or ()),
        )

    def already_committed(self, commit_id: str | None) -> bool:
        return commit_id is not None and commit_id in self.commit_ids

    @classmethod
    def anonymous(
        cls, quick_count: int, premium_count: int, window_resets_at: datetime | None = None
    ) -> "ProfileSnapshot":
        total = quick_count + premium_count
        return cls(
            UsageRecord(
                lifetime_count=total,
                monthly_count=total,
                monthly_reset_at=window_resets_at,
                quick_count=quick_count,
                premium_count=premium_count,
            )
        )


@dataclass(frozen=True)
class UsageDecision:
    """Outcome of a pre-check, including exactly how the request would be paid"""

    can_proceed: bool
    tier: Tier
    tier_name: str
    model_type: ModelType
    used: int
    limit: int | None
    remaining: int | None
    payment_method: PaymentMethod | None
    credit_balance: int
    quick_remaining: int | None
    premium_remaining: int | None
    reset_at: datetime | None

    @property
    def is_unbounded(self) -> bool:
        return self.limit is None

    def to_usage_block(self, credits_used: int | None = None) -> dict[str, Any]:
        def _fmt(value: int | None) -> int | str:
            return "unlimited" if value is None else value

        block = {
            "used": self.used,
            "limit": _fmt(self.limit),
            "remaining": _fmt(self.remaining),
            "tier": self.tier.value,
            "tierName": self.tier_name,
            "quickRemaining": _fmt(self.quick_remaining),
            "premiumRemaining": _fmt(self.premium_remaining),
            "credits": self.credit_balance,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
        }
        if credits_used is not None:
            block["creditsUsed"] = credits_used
        return block


@dataclass(frozen=True)
class UsageDelta:
    """
    Counter changes produced by a commit.

    ``expected`` is the stored state the delta was computed from; a
    compare-and-swap persistence step must only apply ``result`` if the row
    still matches it.
    """

    tier: Tier
    model_type: ModelType
    payment_method: PaymentMethod
    expected: UsageRecord
    result: UsageRecord
    reset_applied: bool = False
    overage: bool = False
    commit_ids: tuple[str, ...] = ()

    @property
    def credits_used(self) -> int:
        return self.expected.credit_balance - self.result.credit_balance

    @property
    def lifetime_increment(self) -> int:
        return self.result.lifetime_count - self.expected.lifetime_count

    def changed_fields(self) -> dict[str, Any]:
        before = self.expected.to_profile_fields()
        return {k: v for k, v in self.result.to_profile_fields().items() if before.get(k) != v}


class UsageLedger:
    """
    Pricing and counter arithmetic.

    Stateless apart from the tier policy and clock, so it is safe to share
    between concurrent requests.
    """

    def __init__(
        self,
        policy: TierPolicy = tier_policy,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        credit_costs: Mapping[ModelType, int] = CREDIT_COSTS,
    ):
        self._policy = policy
        self._clock = clock
        self._credit_costs = dict(credit_costs)

    def credit_cost(self, model_type: ModelType) -> int:
        return self._credit_costs[ModelType(model_type)]

    def resolve_tier(self, identity: Identity, snapshot: ProfileSnapshot) -> Tier:
        if isinstance(identity, AuthenticatedIdentity):
            return self._policy.tier_for(identity.user_id, snapshot.subscription_status)
        if isinstance(identity, AnonymousIdentity):
            return Tier.ANONYMOUS
        raise TypeError(f"Unsupported identity type: {type(identity).__name__}")

    def current_view(self, record: UsageRecord, now: datetime | None = None) -> UsageRecord:
        """
        Apply the lazy monthly reset to a record.

        Once ``now`` reaches ``monthly_reset_at`` the monthly counters read as
        zero and the next reset is one month from ``now``. Deriving the new
        date from ``now`` makes concurrent resets produce the same result.
        """
        now = now or self._clock()
        if record.monthly_reset_at is None or now < record.monthly_reset_at:
            return record
        return replace(
            record,
            monthly_count=0,
            quick_count=0,
            premium_count=0,
            monthly_reset_at=add_months(now, 1),
        )

    def _classify(
        self, free_remaining: int, credit_balance: int, model_type: ModelType
    ) -> PaymentMethod | None:
        # Free allotment is always spent before credits
        if free_remaining > 0:
            return PaymentMethod.free_count()
        cost = self.credit_cost(model_type)
        if credit_balance >= cost:
            return PaymentMethod.credit(cost)
        return None

    def _decision(
        self, tier: Tier, record: UsageRecord, model_type: ModelType
    ) -> UsageDecision:
        config = self._policy.lookup(tier)
        if config.is_unbounded:
            return UsageDecision(
                can_proceed=True,
                tier=tier,
                tier_name=config.display_name,
                model_type=model_type,
                used=record.monthly_count,
                limit=None,
                remaining=None,
                payment_method=PaymentMethod.free_count(),
                credit_balance=record.credit_balance,
                quick_remaining=None,
                premium_remaining=None,
                reset_at=record.monthly_reset_at,
            )

        used = record.monthly_count
        free_remaining = max(0, config.monthly_limit - used)
        payment = self._classify(free_remaining, record.credit_balance, model_type)
        return UsageDecision(
            can_proceed=payment is not None,
            tier=tier,
            tier_name=config.display_name,
            model_type=model_type,
            used=used,
            limit=config.monthly_limit,
            remaining=free_remaining,
            payment_method=payment,
            credit_balance=record.credit_balance,
            quick_remaining=free_remaining + record.credit_balance // self.credit_cost(ModelType.QUICK),
            premium_remaining=free_remaining
            + record.credit_balance // self.credit_cost(ModelType.PREMIUM),
            reset_at=record.monthly_reset_at,
        )

    def evaluate(
        self,
        identity: Identity,
        snapshot: ProfileSnapshot,
        model_type: ModelType,
        tier: Tier | None = None,
    ) -> UsageDecision:
        """
        Decide whether ``identity`` may run one ``model_type`` generation.

        Args:
            identity: Authenticated or anonymous identity
            snapshot: Freshest known counters for the identity
            model_type: Requested model type
            tier: Explicit tier override (privileged bypass)

        Returns:
            UsageDecision with can_proceed and the payment method it implies
        """
        model_type = ModelType(model_type)
        tier = tier or self.resolve_tier(identity, snapshot)
        record = self.current_view(snapshot.usage)
        return self._decision(tier, record, model_type)

    def commit(
        self,
        identity: Identity,
        snapshot: ProfileSnapshot,
        model_type: ModelType,
        decision: UsageDecision,
        commit_id: str | None = None,
    ) -> UsageDelta:
        """
        Compute the counter changes for one successful generation.

        The payment is classified again from ``snapshot`` because the stored
        state may have moved since the pre-check. If nothing is payable any
        more (a concurrent request used the last allowance) the generation is
        recorded against the free count rather than driving credits negative.

        When ``commit_id`` is given it is appended to the identity's recent
        commit ids, which the persistence step stores with the counters.
        """
        model_type = ModelType(model_type)
        now = self._clock()
        tier = decision.tier
        config = self._policy.lookup(tier)
        expected = snapshot.usage
        reset_applied = expected.monthly_reset_at is not None and now >= expected.monthly_reset_at
        record = self.current_view(expected, now)

        overage = False
        if config.is_unbounded:
            payment = PaymentMethod.free_count()
        else:
            free_remaining = max(0, config.monthly_limit - record.monthly_count)
            payment = self._classify(free_remaining, record.credit_balance, model_type)
            if payment is None:
                logger.warning(
                    f"Usage overage for {identity}: {tier.value} tier has no allowance left "
                    f"at commit, recording {model_type.value} generation against free count"
                )
                payment = PaymentMethod.free_count()
                overage = True
            elif payment != decision.payment_method:
                logger.info(
                    f"Payment for {identity} reclassified at commit: "
                    f"{decision.payment_method} -> {payment}"
                )

        next_reset_at = record.monthly_reset_at
        if next_reset_at is None and tier is not Tier.ANONYMOUS:
            next_reset_at = add_months(now, 1)

        result = UsageRecord(
            lifetime_count=record.lifetime_count + 1,
            monthly_count=record.monthly_count + 1,
            monthly_reset_at=next_reset_at,
            credit_balance=debit_credits(record.credit_balance, payment.credit_cost),
            quick_count=record.quick_count + (1 if model_type is ModelType.QUICK else 0),
            premium_count=record.premium_count + (1 if model_type is ModelType.PREMIUM else 0),
        )
        return UsageDelta(
            tier=tier,
            model_type=model_type,
            payment_method=payment,
            expected=expected,
            result=result,
            reset_applied=reset_applied,
            overage=overage,
            commit_ids=remember_commit(snapshot.commit_ids, commit_id),
        )

    def report(
        self, tier: Tier, record: UsageRecord, model_type: ModelType = ModelType.QUICK
    ) -> UsageDecision:
        """Usage view of ``record`` for response augmentation"""
        return self._decision(tier, self.current_view(record), ModelType(model_type))
