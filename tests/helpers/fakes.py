"""
In-memory collaborators for admission tests.

These stand in for the Supabase-backed stores and the Gemini client so the
admission pipeline can be exercised end to end without any network. The
profile store honours the same compare-and-swap contract as
SupabaseProfileStore.apply_usage_delta.
"""

from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from src.config import usage_limits
from src.db.anonymous_usage import AnonymousUsage, UsageSignals
from src.services.abuse_guard import SlidingWindowLimiter, SuspiciousActivityGuard
from src.services.admin_sessions import AdminSessionStore
from src.services.admission_controller import AdmissionConfig, AdmissionController
from src.services.anonymous_identity_store import AnonymousIdentityStore
from src.services.client_identity import AnonCookieSigner, ClientIdentityResolver, TrustedProxies
from src.services.global_capacity_guard import GlobalCapacityGuard
from src.services.image_generation import GenerationResult, ImageInput
from src.services.privileged_bypass import PrivilegedBypass
from src.services.startup import AppServices
from src.services.usage_ledger import ModelType, UsageDelta, UsageLedger, UsageRecord
from src.services.usage_reconciler import UsageReconciler
from src.utils.exceptions import PersistenceError

TEST_COOKIE_SECRET = "test-cookie-secret"
TEST_ADMIN_PASSWORD = "correct horse battery staple"
TEST_MODE_SECRET = "test-mode-secret"
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"
REFERENCE_PHOTO = "beach-01.jpg"


class FakeClock:
    """Manually advanced clock usable as both an epoch and a datetime source"""

    def __init__(self, start: float = 1_767_225_600.0):  # 2026-01-01T00:00:00Z
        self.now = start

    def __call__(self) -> float:
        return self.now

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, UTC)

    def advance(self, seconds: float = 0, **kwargs) -> None:
        self.now += seconds + timedelta(**kwargs).total_seconds()


class InMemoryProfileStore:
    """ProfileStore keeping rows in a dict, with failure and race injection"""

    def __init__(self, rows: Optional[Dict[str, Dict[str, Any]]] = None):
        self.rows: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (rows or {}).items()}
        self.fail_reads = False
        self.fail_writes = 0  # number of upcoming apply_usage_delta calls that raise
        self.lose_responses = 0  # upcoming applies that land, then raise anyway
        self.before_apply: Optional[Callable[["InMemoryProfileStore", str], None]] = None
        self.apply_calls = 0
        self.conflicts = 0

    def add_profile(self, user_id: str, **fields) -> None:
        self.rows[user_id] = {"id": user_id, **fields}

    def record_for(self, user_id: str) -> UsageRecord:
        return UsageRecord.from_profile(self.rows.get(user_id) or {})

    def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        if self.fail_reads:
            raise PersistenceError("profiles unavailable")
        row = self.rows.get(user_id)
        return dict(row) if row is not None else None

    def update_profile(self, user_id: str, fields: Dict[str, Any]) -> None:
        self.rows.setdefault(user_id, {"id": user_id}).update(fields)

    def apply_usage_delta(self, user_id: str, delta: UsageDelta) -> bool:
        self.apply_calls += 1
        if self.fail_writes:
            self.fail_writes -= 1
            raise PersistenceError("profiles write failed")
        if self.before_apply is not None:
            hook, self.before_apply = self.before_apply, None
            hook(self, user_id)

        row = self.rows.get(user_id)
        if row is None:
            if delta.expected != UsageRecord():
                return False
            row = self.rows[user_id] = {"id": user_id}
        elif UsageRecord.from_profile(row) != delta.expected:
            self.conflicts += 1
            return False
        row.update(delta.result.to_profile_fields())
        if delta.commit_ids:
            row["recent_commit_ids"] = list(delta.commit_ids)
        if self.lose_responses:
            self.lose_responses -= 1
            raise PersistenceError("timeout reading response")
        return True

    def increment_credits(self, user_id: str, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Credit increment must be positive")
        row = self.rows.setdefault(user_id, {"id": user_id})
        row["credit_balance"] = int(row.get("credit_balance") or 0) + amount
        return row["credit_balance"]


class InMemoryAnonymousBackend:
    """AnonymousUsageBackend with the same window semantics as the SQL functions"""

    def __init__(self, clock: Optional[FakeClock] = None, window_seconds: int = usage_limits.ANON_USAGE_WINDOW_SECONDS):
        self.clock = clock or FakeClock()
        self.window_seconds = window_seconds
        self.rows: Dict[str, AnonymousUsage] = {}
        self.signals: Dict[str, UsageSignals] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.read_calls = 0
        self.created: List[str] = []
        self.commit_ids: Dict[str, List[str]] = {}
        self.lose_responses = 0

    def _current(self, anon_id: str) -> AnonymousUsage:
        usage = self.rows.get(anon_id)
        if usage is None:
            return AnonymousUsage()
        resets_at = usage.window_resets_at(self.window_seconds)
        if resets_at is not None and self.clock.datetime() >= resets_at:
            return AnonymousUsage()
        return usage

    def get_anon_usage(self, anon_id: str) -> AnonymousUsage:
        self.read_calls += 1
        if self.fail_reads:
            raise PersistenceError("usage_counters unavailable")
        return self._current(anon_id)

    def create_anon_usage(self, anon_id: str) -> AnonymousUsage:
        if self.fail_writes:
            raise PersistenceError("usage_counters unavailable")
        self.created.append(anon_id)
        return self.rows.setdefault(anon_id, AnonymousUsage(window_started_at=self.clock.datetime()))

    def increment_anon_usage(
        self, anon_id: str, model_type: str, meta: UsageSignals, commit_id: Optional[str] = None
    ) -> AnonymousUsage:
        if self.fail_writes:
            raise PersistenceError("usage_counters write failed")
        seen = self.commit_ids.setdefault(anon_id, [])
        if commit_id is not None and commit_id in seen:
            return self._current(anon_id)
        current = self._current(anon_id)
        started = current.window_started_at or self.clock.datetime()
        usage = AnonymousUsage(
            quick_count=current.quick_count + (1 if model_type == "quick" else 0),
            premium_count=current.premium_count + (1 if model_type == "premium" else 0),
            window_started_at=started,
        )
        self.rows[anon_id] = usage
        self.signals[anon_id] = meta
        if commit_id is not None:
            seen.append(commit_id)
        if self.lose_responses:
            self.lose_responses -= 1
            raise PersistenceError("timeout reading response")
        return usage


class FakeGenerator:
    """ImageGenerator returning a canned result"""

    def __init__(self, success: bool = True, error: Optional[str] = None, raises: Optional[BaseException] = None):
        self.success = success
        self.error = error
        self.raises = raises
        self.calls: List[tuple] = []

    async def generate(self, photo: ImageInput, reference: ImageInput, model_type: ModelType) -> GenerationResult:
        self.calls.append((photo, reference, model_type))
        if self.raises is not None:
            raise self.raises
        if not self.success:
            return GenerationResult(False, model_type, error=self.error or "Image generation failed")
        return GenerationResult(True, model_type, image_bytes=PNG_BYTES, mime_type="image/png")


def build_controller(
    profile_store: Optional[InMemoryProfileStore] = None,
    anon_backend: Optional[InMemoryAnonymousBackend] = None,
    clock: Optional[FakeClock] = None,
    admin_sessions: Optional[AdminSessionStore] = None,
    global_limit: int = usage_limits.GLOBAL_GENERATION_LIMIT,
    abuse_threshold: int = usage_limits.ABUSE_REQUEST_THRESHOLD,
    test_mode_secret: Optional[str] = TEST_MODE_SECRET,
    reconciler: Optional[UsageReconciler] = None,
) -> AdmissionController:
    clock = clock or FakeClock()
    if anon_backend is None:
        anon_backend = InMemoryAnonymousBackend(clock)
    else:
        anon_backend.clock = clock
    return AdmissionController(
        ledger=UsageLedger(clock=clock.datetime),
        global_guard=GlobalCapacityGuard(limit=global_limit, window_seconds=3600, clock=clock),
        abuse_guard=SuspiciousActivityGuard(threshold=abuse_threshold, clock=clock),
        bypass=PrivilegedBypass(admin_sessions or AdminSessionStore(clock=clock), test_mode_secret),
        profile_store=profile_store or InMemoryProfileStore(),
        anon_store=AnonymousIdentityStore(anon_backend),
        reconciler=reconciler or UsageReconciler(),
        config=AdmissionConfig(upgrade_url="/pricing"),
    )


def build_test_services(
    controller: AdmissionController,
    generator: Optional[FakeGenerator] = None,
    admin_password: Optional[str] = TEST_ADMIN_PASSWORD,
) -> AppServices:
    return AppServices(
        controller=controller,
        identity_resolver=ClientIdentityResolver(
            trusted_proxies=TrustedProxies(["127.0.0.1/32"]),
            signer=AnonCookieSigner(TEST_COOKIE_SECRET),
            secure_cookie=False,
        ),
        admin_sessions=controller.bypass.admin_sessions,
        admin_login_limiter=SlidingWindowLimiter(5, 900, name="admin_login"),
        generator=generator or FakeGenerator(),
        admin_password=admin_password,
    )


def upload(model_type="quick", photo_id=REFERENCE_PHOTO, content_type="image/jpeg", data=b"\xff\xd8\xffme"):
    """Multipart kwargs for a TestClient POST to /api/generate"""
    return {
        "files": {"photo": ("me.jpg", data, content_type)},
        "data": {"photoId": photo_id, "modelType": model_type},
    }
