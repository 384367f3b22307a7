import asyncio
import logging
import secrets
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Request

from src.schemas.admin import AddCreditsRequest, AdminLoginRequest, AdminLoginResponse
from src.security.deps import get_client_identity, get_services
from src.services.client_identity import ClientIdentity
from src.services.privileged_bypass import ADMIN_TOKEN_HEADER
from src.services.startup import AppServices
from src.utils.exceptions import APIExceptions
from src.utils.ip_utils import mask_ip

# Initialize logging
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


def _require_admin(request: Request, services: AppServices) -> None:
    if not services.controller.bypass.is_admin(request.headers):
        raise APIExceptions.unauthorized("Admin authentication required")


@router.post("/login", response_model=AdminLoginResponse)
async def admin_login(
    body: AdminLoginRequest,
    client: ClientIdentity = Depends(get_client_identity),
    services: AppServices = Depends(get_services),
):
    """Exchange the admin password for a session token."""
    attempt = await services.admin_login_limiter.hit(client.source_ip)
    if not attempt.allowed:
        logger.warning(f"[ADMIN] Login rate limit hit from {mask_ip(client.source_ip)}")
        raise APIExceptions.rate_limited(
            "Too many login attempts. Please try again later.", attempt.retry_after
        )

    if not services.admin_password:
        raise APIExceptions.service_unavailable("Admin access is not configured")
    if not body.password:
        raise APIExceptions.bad_request("Password is required")

    if not secrets.compare_digest(
        body.password.encode("utf-8"), services.admin_password.encode("utf-8")
    ):
        logger.warning(f"[ADMIN] Failed login attempt from {mask_ip(client.source_ip)}")
        raise APIExceptions.unauthorized("Invalid password")

    token, expires_at = services.admin_sessions.create_session()
    logger.warning(f"[ADMIN] Successful login from {mask_ip(client.source_ip)}")
    return AdminLoginResponse(
        token=token, expiresAt=datetime.fromtimestamp(expires_at, UTC).isoformat()
    )


@router.post("/logout")
async def admin_logout(request: Request, services: AppServices = Depends(get_services)):
    services.admin_sessions.revoke(request.headers.get(ADMIN_TOKEN_HEADER))
    return {"success": True}


@router.get("/status")
async def admin_status(request: Request, services: AppServices = Depends(get_services)):
    """Whether the caller holds a valid admin token, plus guard state for admins."""
    controller = services.controller
    is_admin = controller.bypass.is_admin(request.headers)
    status = {"isAdmin": is_admin, "adminConfigured": bool(services.admin_password)}
    if not is_admin:
        return status

    capacity = await controller.global_guard.snapshot()
    status.update(
        {
            "activeAdminSessions": services.admin_sessions.active_count(),
            "testModeEnabled": controller.bypass.test_mode_enabled,
            "globalCapacity": capacity.to_dict(),
            "trackedIps": await controller.abuse_guard.tracked_keys(),
            "anonymousCache": controller.anon_store.stats(),
            "pendingUsageCommits": await controller.reconciler.pending_count(),
        }
    )
    return status


@router.post("/credits")
async def grant_credits(
    body: AddCreditsRequest, request: Request, services: AppServices = Depends(get_services)
):
    """Atomically add credits to a user's balance."""
    _require_admin(request, services)
    balance = await asyncio.to_thread(
        services.controller.profile_store.increment_credits, body.userId, body.amount
    )
    logger.warning(f"[ADMIN] Granted {body.amount} credits to {body.userId}")
    return {"success": True, "userId": body.userId, "creditBalance": balance}
