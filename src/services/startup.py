"""
Service wiring and application lifespan.

build_services() constructs every admission collaborator from Config without
touching the network; the lifespan starts the usage reconciliation loop and
cancels it on shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from src.config import Config
from src.db.anonymous_usage import SupabaseAnonymousUsageStore
from src.db.profiles import SupabaseProfileStore
from src.services.abuse_guard import SlidingWindowLimiter, SuspiciousActivityGuard, admin_login_limiter
from src.services.admin_sessions import AdminSessionStore
from src.services.admission_controller import AdmissionConfig, AdmissionController
from src.services.anonymous_identity_store import AnonymousIdentityStore
from src.services.client_identity import AnonCookieSigner, ClientIdentityResolver, TrustedProxies
from src.services.global_capacity_guard import GlobalCapacityGuard
from src.services.image_generation import GeminiImageGenerator, ImageGenerator
from src.services.privileged_bypass import PrivilegedBypass
from src.services.usage_ledger import UsageLedger
from src.services.usage_reconciler import UsageReconciler

logger = logging.getLogger(__name__)

# Track background tasks to prevent GC and enable cleanup
_background_tasks: set[asyncio.Task] = set()


def _create_background_task(coro, name: str = None) -> asyncio.Task:
    """Create a background task and track it to prevent garbage collection."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


@dataclass
class AppServices:
    """Process-wide singletons shared by the routes"""

    controller: AdmissionController
    identity_resolver: ClientIdentityResolver
    admin_sessions: AdminSessionStore
    admin_login_limiter: SlidingWindowLimiter
    generator: ImageGenerator
    admin_password: str | None = None


def build_services() -> AppServices:
    admin_sessions = AdminSessionStore(ttl_seconds=Config.ADMIN_SESSION_TTL_SECONDS)
    controller = AdmissionController(
        ledger=UsageLedger(),
        global_guard=GlobalCapacityGuard(
            limit=Config.GLOBAL_GENERATION_LIMIT,
            window_seconds=Config.GLOBAL_GENERATION_WINDOW_SECONDS,
        ),
        abuse_guard=SuspiciousActivityGuard(
            threshold=Config.ABUSE_REQUEST_THRESHOLD,
            window_seconds=Config.ABUSE_WINDOW_SECONDS,
            retention_seconds=Config.ABUSE_RETENTION_SECONDS,
        ),
        bypass=PrivilegedBypass(admin_sessions, Config.TEST_MODE_SECRET),
        profile_store=SupabaseProfileStore(),
        anon_store=AnonymousIdentityStore(SupabaseAnonymousUsageStore()),
        reconciler=UsageReconciler(),
        config=AdmissionConfig.from_config(),
    )
    resolver = ClientIdentityResolver(
        trusted_proxies=TrustedProxies(Config.TRUSTED_PROXIES),
        signer=AnonCookieSigner(Config.ANON_COOKIE_SECRET),
        cookie_name=Config.ANON_COOKIE_NAME,
        cookie_max_age=Config.ANON_COOKIE_MAX_AGE,
        secure_cookie=Config.IS_PRODUCTION,
    )
    if not Config.TRUSTED_PROXIES:
        logger.info("No TRUSTED_PROXIES configured, X-Forwarded-For will be ignored")
    return AppServices(
        controller=controller,
        identity_resolver=resolver,
        admin_sessions=admin_sessions,
        admin_login_limiter=admin_login_limiter(),
        generator=GeminiImageGenerator(),
        admin_password=Config.ADMIN_PASSWORD,
    )


@asynccontextmanager
async def lifespan(app):
    """
    Application lifespan manager for startup and shutdown events
    """
    services: AppServices = app.state.services

    try:
        Config.validate()
    except RuntimeError as e:
        if Config.IS_PRODUCTION:
            raise
        logger.warning(f"⚠️  Configuration incomplete, usage storage will be unavailable: {e}")

    controller = services.controller
    _create_background_task(
        controller.reconciler.run_forever(controller.reconcile_pending),
        name="usage-reconciler",
    )
    logger.info("✅ Usage reconciliation loop started")

    yield

    if _background_tasks:
        logger.info(f"Cancelling {len(_background_tasks)} pending background tasks...")
        for task in _background_tasks:
            task.cancel()
        await asyncio.gather(*_background_tasks, return_exceptions=True)
        _background_tasks.clear()

    pending = await controller.reconciler.pending_count()
    if pending:
        logger.error(f"Shutting down with {pending} unreconciled usage commits")
