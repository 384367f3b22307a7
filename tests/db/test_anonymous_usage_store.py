from datetime import UTC, datetime, timedelta

import pytest

from src.db.anonymous_usage import AnonymousUsage, SupabaseAnonymousUsageStore, UsageSignals
from src.utils.exceptions import PersistenceError
from tests.helpers.mocks import MockSupabaseClient

ANON_ID = "k" * 32


@pytest.fixture
def sb():
    return MockSupabaseClient()


@pytest.fixture
def store(sb):
    return SupabaseAnonymousUsageStore(client_factory=lambda: sb, window_seconds=86400)


class TestAnonymousUsage:
    def test_window_resets_at(self):
        started = datetime(2026, 1, 1, tzinfo=UTC)
        usage = AnonymousUsage(1, 2, started)
        assert usage.total == 3
        assert usage.window_resets_at(3600) == started + timedelta(hours=1)
        assert AnonymousUsage().window_resets_at() is None


class TestSupabaseAnonymousUsageStore:
    def test_get_existing(self, store, sb):
        sb.set_rpc_result(
            "get_usage_counter",
            [{"quick_count": 1, "premium_count": 0, "window_started_at": "2026-01-01T00:00:00Z"}],
        )
        usage = store.get_anon_usage(ANON_ID)
        assert usage.quick_count == 1
        assert usage.window_started_at == datetime(2026, 1, 1, tzinfo=UTC)
        assert sb.rpc_calls == [
            ("get_usage_counter", {"p_anon_id": ANON_ID, "p_window_seconds": 86400})
        ]

    def test_get_unknown(self, store):
        assert store.get_anon_usage(ANON_ID) == AnonymousUsage()

    def test_create(self, store, sb):
        sb.set_rpc_result(
            "create_usage_counter",
            [{"quick_count": 0, "premium_count": 0, "window_started_at": "2026-01-01T00:00:00+00:00"}],
        )
        usage = store.create_anon_usage(ANON_ID)
        assert usage.total == 0
        assert usage.window_started_at is not None

    def test_increment(self, store, sb):
        sb.set_rpc_result(
            "increment_usage_counter",
            [{"new_quick": 0, "new_premium": 1, "window_started_at": "2026-01-01T00:00:00+00:00"}],
        )
        signals = UsageSignals(ip_prefix="203.0.113.0/24", ua_hash="f" * 32)
        usage = store.increment_anon_usage(ANON_ID, "premium", signals)
        assert usage.premium_count == 1
        name, params = sb.rpc_calls[0]
        assert name == "increment_usage_counter"
        assert params["p_model_type"] == "premium"
        assert params["p_ip_prefix"] == "203.0.113.0/24"
        assert params["p_ua_hash"] == "f" * 32
        assert params["p_commit_id"] is None

    def test_increment_forwards_commit_id(self, store, sb):
        sb.set_rpc_result(
            "increment_usage_counter",
            [{"new_quick": 1, "new_premium": 0, "window_started_at": "2026-01-01T00:00:00+00:00"}],
        )
        store.increment_anon_usage(ANON_ID, "quick", UsageSignals(), commit_id="c-1")
        _, params = sb.rpc_calls[0]
        assert params["p_commit_id"] == "c-1"
        assert params["p_commit_history"] > 0

    def test_increment_without_row_fails(self, store, sb):
        sb.set_rpc_result("increment_usage_counter", [])
        with pytest.raises(PersistenceError):
            store.increment_anon_usage(ANON_ID, "quick", UsageSignals())

    def test_rpc_errors_become_persistence_errors(self, store, sb):
        sb.set_rpc_result("get_usage_counter", ConnectionError("boom"))
        with pytest.raises(PersistenceError):
            store.get_anon_usage(ANON_ID)

    def test_client_factory_errors(self):
        def broken():
            raise RuntimeError("SUPABASE_URL not set")

        with pytest.raises(PersistenceError):
            SupabaseAnonymousUsageStore(client_factory=broken).get_anon_usage(ANON_ID)
