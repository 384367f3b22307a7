"""
Profile store (Supabase ``profiles`` table).

Profiles are owned by Supabase auth; this module only reads them and
applies usage deltas. Counter updates are conditional on the values they
were computed from, so concurrent commits can't lose an increment.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Protocol

from src.config.supabase_config import get_supabase_client
from src.services.prometheus_metrics import track_database_query
from src.services.usage_ledger import UsageDelta
from src.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = (
    "id, subscription_status, generation_count, monthly_generation_count, "
    "monthly_reset_at, credit_balance, quick_count, premium_count, recent_commit_ids"
)


class ProfileStore(Protocol):
    def get_profile(self, user_id: str) -> dict[str, Any] | None: ...

    def update_profile(self, user_id: str, fields: dict[str, Any]) -> None: ...

    def apply_usage_delta(self, user_id: str, delta: UsageDelta) -> bool: ...

    def increment_credits(self, user_id: str, amount: int) -> int: ...


class SupabaseProfileStore:
    """ProfileStore backed by the Supabase PostgREST API"""

    def __init__(self, client_factory=get_supabase_client):
        self._client_factory = client_factory

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        """
        Fetch the usage-relevant columns of a profile.

        Returns:
            The profile row, or None if the user has no profile yet

        Raises:
            PersistenceError: If Supabase can't be reached or errors
        """
        try:
            client = self._client_factory()
            with track_database_query(table="profiles", operation="select"):
                result = (
                    client.table("profiles").select(PROFILE_COLUMNS).eq("id", user_id).execute()
                )
        except Exception as e:
            logger.error(f"Failed to load profile {user_id}: {e}")
            raise PersistenceError(f"Failed to load profile: {e}") from e

        return result.data[0] if result.data else None

    def update_profile(self, user_id: str, fields: dict[str, Any]) -> None:
        try:
            client = self._client_factory()
            with track_database_query(table="profiles", operation="update"):
                client.table("profiles").update(
                    {**fields, "updated_at": datetime.now(UTC).isoformat()}
                ).eq("id", user_id).execute()
        except Exception as e:
            logger.error(f"Failed to update profile {user_id}: {e}")
            raise PersistenceError(f"Failed to update profile: {e}") from e

    def apply_usage_delta(self, user_id: str, delta: UsageDelta) -> bool:
        """
        Apply a usage delta with optimistic locking.

        The update only matches if the counters still hold the values the
        delta was computed from. A missing row is created from the result.
        The delta's recent commit ids are written in the same update, so a
        retried commit can tell whether it already landed.

        Returns:
            True if applied, False on concurrent modification
        """
        expected = delta.expected
        fields = {**delta.result.to_profile_fields(), "updated_at": datetime.now(UTC).isoformat()}
        if delta.commit_ids:
            fields["recent_commit_ids"] = list(delta.commit_ids)

        try:
            client = self._client_factory()
            with track_database_query(table="profiles", operation="update"):
                query = (
                    client.table("profiles")
                    .update(fields)
                    .eq("id", user_id)
                    .eq("generation_count", expected.lifetime_count)
                    .eq("monthly_generation_count", expected.monthly_count)
                    .eq("credit_balance", expected.credit_balance)
                    .eq("quick_count", expected.quick_count)
                    .eq("premium_count", expected.premium_count)
                )
                if expected.monthly_reset_at is None:
                    query = query.is_("monthly_reset_at", "null")
                else:
                    query = query.eq("monthly_reset_at", expected.monthly_reset_at.isoformat())
                result = query.execute()

            if result.data:
                return True

            # Either someone else won the race or the profile row doesn't exist yet
            with track_database_query(table="profiles", operation="select"):
                existing = client.table("profiles").select("id").eq("id", user_id).execute()
            if existing.data:
                return False

            if expected.lifetime_count != 0:
                # Delta was computed from a row that has since disappeared
                return False
            with track_database_query(table="profiles", operation="insert"):
                client.table("profiles").insert({"id": user_id, **fields}).execute()
            return True

        except Exception as e:
            logger.error(f"Failed to apply usage delta for {user_id}: {e}")
            raise PersistenceError(f"Failed to apply usage delta: {e}") from e

    def increment_credits(self, user_id: str, amount: int) -> int:
        """
        Atomically add credits through the ``increment_credits`` SQL function.

        There is no read-modify-write fallback: if the function is missing
        the call fails.

        Returns:
            The new credit balance
        """
        if amount <= 0:
            raise ValueError("Credit increment must be positive")
        try:
            client = self._client_factory()
            with track_database_query(table="profiles", operation="increment_credits"):
                result = client.rpc(
                    "increment_credits", {"p_user_id": user_id, "p_credits_to_add": amount}
                ).execute()
        except Exception as e:
            logger.error(f"increment_credits failed for {user_id}: {e}")
            raise PersistenceError(f"increment_credits failed: {e}") from e

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("new_balance", data.get("increment_credits"))
        if data is None:
            raise PersistenceError(f"increment_credits returned no balance for {user_id}")
        logger.info(f"Added {amount} credits to {user_id}, balance now {data}")
        return int(data)
