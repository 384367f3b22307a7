"""
Tier policy table.

Static mapping of tier -> monthly quota and display metadata. Loaded once at
import time and never mutated.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class Tier(str, Enum):
    """Quota tiers an identity can be evaluated under"""

    ANONYMOUS = "anonymous"
    FREE = "free"
    PAID = "paid"
    ADMIN = "admin"
    TEST = "test"


@dataclass(frozen=True)
class TierConfig:
    display_name: str
    monthly_limit: int | None  # None means unbounded
    description: str

    @property
    def is_unbounded(self) -> bool:
        return self.monthly_limit is None


_TIERS = MappingProxyType(
    {
        Tier.ANONYMOUS: TierConfig("Anonymous", 1, "Try it once without signing up"),
        Tier.FREE: TierConfig("Free", 3, "Sign up for 3 free generations"),
        Tier.PAID: TierConfig("Pro", None, "Unlimited generations"),
        Tier.ADMIN: TierConfig("Admin", None, "Administrative access"),
        Tier.TEST: TierConfig("Test", None, "Automated testing access"),
    }
)

_UPGRADE_MESSAGES = MappingProxyType(
    {
        Tier.ANONYMOUS: "Sign up for free to get 3 more generations!",
        Tier.FREE: "Upgrade to Pro for unlimited generations!",
    }
)
_DEFAULT_UPGRADE_MESSAGE = "Upgrade your plan for more generations."

_missing = set(Tier) - set(_TIERS)
if _missing:
    raise RuntimeError(f"Tier table is missing entries for: {sorted(t.value for t in _missing)}")


class TierPolicy:
    """Read-only access to the tier table"""

    def lookup(self, tier: Tier | str) -> TierConfig:
        """
        Return the configuration for a tier.

        Raises:
            ValueError: If the tier is not a known Tier value
        """
        return _TIERS[Tier(tier)]

    def upgrade_message(self, tier: Tier | str) -> str:
        return _UPGRADE_MESSAGES.get(Tier(tier), _DEFAULT_UPGRADE_MESSAGE)

    def tier_for(self, user_id: str | None, subscription_status: str | None) -> Tier:
        """Derive the effective tier of a normal (non-privileged) identity"""
        if user_id is None:
            return Tier.ANONYMOUS
        if subscription_status == "active":
            return Tier.PAID
        return Tier.FREE

    def all(self) -> dict[Tier, TierConfig]:
        return dict(_TIERS)


tier_policy = TierPolicy()
