import logging

from fastapi import APIRouter, Depends, Request, Response

from src.security.deps import get_client_identity, get_services
from src.services.client_identity import ClientIdentity
from src.services.startup import AppServices

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/me", tags=["usage"])
async def get_current_usage(
    request: Request,
    response: Response,
    client: ClientIdentity = Depends(get_client_identity),
    services: AppServices = Depends(get_services),
):
    """Current identity and remaining allowance. Never charges usage."""
    decision, minted = await services.controller.describe_usage(client)
    if minted:
        services.identity_resolver.set_cookie(response, minted)

    return {
        "authenticated": client.is_authenticated,
        "userId": client.user_id,
        "isAdmin": services.controller.bypass.is_admin(request.headers),
        "usage": decision.to_usage_block(),
    }
