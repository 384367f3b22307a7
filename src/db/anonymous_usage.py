"""
Durable anonymous usage counters (Supabase ``usage_counters`` table).

All writes go through SQL functions so increments are atomic in the
database; see supabase/migrations for their definitions.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from src.config import usage_limits
from src.config.supabase_config import get_supabase_client
from src.services.prometheus_metrics import track_database_query
from src.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnonymousUsage:
    quick_count: int = 0
    premium_count: int = 0
    window_started_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.quick_count + self.premium_count

    def window_resets_at(
        self, window_seconds: int = usage_limits.ANON_USAGE_WINDOW_SECONDS
    ) -> datetime | None:
        if self.window_started_at is None:
            return None
        return self.window_started_at + timedelta(seconds=window_seconds)


@dataclass(frozen=True)
class UsageSignals:
    """Hashed client signals stored next to anonymous counters for abuse review"""

    ip_prefix: str | None = None
    ua_hash: str | None = None


class AnonymousUsageBackend(Protocol):
    def get_anon_usage(self, anon_id: str) -> AnonymousUsage: ...

    def create_anon_usage(self, anon_id: str) -> AnonymousUsage: ...

    def increment_anon_usage(
        self, anon_id: str, model_type: str, meta: UsageSignals, commit_id: str | None = None
    ) -> AnonymousUsage: ...


def _row_to_usage(row: dict[str, Any], quick_key: str, premium_key: str) -> AnonymousUsage:
    started = row.get("window_started_at")
    if isinstance(started, str):
        started = datetime.fromisoformat(started.replace("Z", "+00:00"))
    if started is not None and started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return AnonymousUsage(
        quick_count=int(row.get(quick_key) or 0),
        premium_count=int(row.get(premium_key) or 0),
        window_started_at=started,
    )


class SupabaseAnonymousUsageStore:
    """AnonymousUsageBackend backed by Supabase RPCs"""

    def __init__(
        self,
        client_factory=get_supabase_client,
        window_seconds: int = usage_limits.ANON_USAGE_WINDOW_SECONDS,
    ):
        self._client_factory = client_factory
        self.window_seconds = window_seconds

    def _rpc(self, name: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            client = self._client_factory()
            with track_database_query(table="usage_counters", operation=name):
                result = client.rpc(name, params).execute()
        except Exception as e:
            logger.error(f"Anonymous usage RPC {name} failed: {e}")
            raise PersistenceError(f"{name} failed: {e}") from e
        return result.data or []

    def get_anon_usage(self, anon_id: str) -> AnonymousUsage:
        rows = self._rpc(
            "get_usage_counter",
            {"p_anon_id": anon_id, "p_window_seconds": self.window_seconds},
        )
        if not rows:
            return AnonymousUsage()
        return _row_to_usage(rows[0], "quick_count", "premium_count")

    def create_anon_usage(self, anon_id: str) -> AnonymousUsage:
        rows = self._rpc("create_usage_counter", {"p_anon_id": anon_id})
        if not rows:
            return AnonymousUsage()
        return _row_to_usage(rows[0], "quick_count", "premium_count")

    def increment_anon_usage(
        self, anon_id: str, model_type: str, meta: UsageSignals, commit_id: str | None = None
    ) -> AnonymousUsage:
        """
        Count one generation. A ``commit_id`` the row has already recorded
        is not counted again; the current counts are returned instead.
        """
        rows = self._rpc(
            "increment_usage_counter",
            {
                "p_anon_id": anon_id,
                "p_model_type": model_type,
                "p_ip_prefix": meta.ip_prefix,
                "p_ua_hash": meta.ua_hash,
                "p_window_seconds": self.window_seconds,
                "p_commit_id": commit_id,
                "p_commit_history": usage_limits.COMMIT_ID_HISTORY,
            },
        )
        if not rows:
            raise PersistenceError("increment_usage_counter returned no row for anon id")
        return _row_to_usage(rows[0], "new_quick", "new_premium")
