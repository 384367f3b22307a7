"""
FastAPI Security Dependencies
Dependency injection functions for authentication, identity and admission
"""

import asyncio
import logging
from dataclasses import dataclass

import sentry_sdk
from fastapi import Depends, File, Form, Request, Response, UploadFile
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.config import Config
from src.config.supabase_config import get_supabase_client
from src.services.admission_controller import AdmissionRequest, AdmissionResult
from src.services.client_identity import ClientIdentity
from src.services.image_generation import ImageInput, load_reference_photo
from src.services.prometheus_metrics import record_admission
from src.services.startup import AppServices
from src.services.usage_ledger import ModelType
from src.utils.exceptions import APIExceptions, PersistenceError
from src.utils.ip_utils import mask_ip

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False so anonymous requests pass
security = HTTPBearer(auto_error=False)

ALLOWED_UPLOAD_TYPES = {"image/jpeg", "image/png", "image/webp"}


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _verify_supabase_token(token: str) -> str | None:
    """Return the Supabase user id for an access token, or None if invalid."""
    response = get_supabase_client().auth.get_user(token)
    user = getattr(response, "user", None)
    return str(user.id) if user else None


async def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str | None:
    """
    Resolve the authenticated user, if any.

    Non-blocking: a missing, malformed or rejected token means the request
    continues as anonymous.
    """
    if credentials is None or not credentials.credentials:
        return None
    try:
        return await asyncio.to_thread(_verify_supabase_token, credentials.credentials)
    except Exception as e:
        logger.warning(f"Auth: token verification failed, continuing as anonymous: {e}")
        return None


async def get_client_identity(
    request: Request,
    user_id: str | None = Depends(get_optional_user_id),
    services: AppServices = Depends(get_services),
) -> ClientIdentity:
    return services.identity_resolver.resolve(request, user_id)


@dataclass(frozen=True)
class GenerationInputs:
    photo: ImageInput
    reference: ImageInput
    reference_name: str
    model_type: ModelType


async def get_generation_inputs(
    photo: UploadFile = File(...),
    photoId: str = Form(...),
    modelType: str = Form("quick"),
) -> GenerationInputs:
    """Validate the upload before any admission state is touched."""
    try:
        model_type = ModelType(modelType)
    except ValueError:
        raise APIExceptions.bad_request("modelType must be 'quick' or 'premium'") from None

    if photo.content_type not in ALLOWED_UPLOAD_TYPES:
        raise APIExceptions.bad_request("Photo must be a JPEG, PNG or WebP image")
    data = await photo.read(Config.MAX_UPLOAD_BYTES + 1)
    if not data:
        raise APIExceptions.bad_request("Photo is empty")
    if len(data) > Config.MAX_UPLOAD_BYTES:
        raise APIExceptions.payload_too_large(Config.MAX_UPLOAD_BYTES)

    reference = await asyncio.to_thread(load_reference_photo, photoId)
    if reference is None:
        raise APIExceptions.not_found("Reference photo")

    return GenerationInputs(
        photo=ImageInput(data, photo.content_type),
        reference=reference,
        reference_name=photoId,
        model_type=model_type,
    )


async def reject_when_saturated(
    request: Request,
    inputs: GenerationInputs = Depends(get_generation_inputs),
    services: AppServices = Depends(get_services),
) -> None:
    """
    Turn requests away while the global window is full, before the bearer
    token is verified against Supabase.

    Errors here fall through to full admission, which re-checks capacity.
    """
    client = services.identity_resolver.resolve(request, None)
    admission_request = AdmissionRequest(
        client=client,
        model_type=inputs.model_type,
        headers=request.headers,
        path=request.url.path,
    )
    try:
        result = await services.controller.precheck_capacity(admission_request)
    except Exception as e:
        logger.exception(f"Capacity precheck error for {mask_ip(client.source_ip)}: {e}")
        sentry_sdk.capture_exception(e)
        return
    if result is not None:
        result.raise_for_denial()


async def admit_generation(
    request: Request,
    response: Response,
    inputs: GenerationInputs = Depends(get_generation_inputs),
    _saturation: None = Depends(reject_when_saturated),
    client: ClientIdentity = Depends(get_client_identity),
    services: AppServices = Depends(get_services),
) -> AdmissionResult:
    """
    Run admission control for a generation request.

    This is the outermost error boundary of the admission pipeline: denials
    and storage failures propagate to their handlers, while any unexpected
    error admits the request without metering.
    """
    admission_request = AdmissionRequest(
        client=client,
        model_type=inputs.model_type,
        headers=request.headers,
        path=request.url.path,
    )
    try:
        result = await services.controller.admit(admission_request)
    except PersistenceError:
        raise
    except Exception as e:
        logger.exception(
            f"Admission pipeline error for {mask_ip(client.source_ip)}, "
            f"continuing without rate limiting: {e}"
        )
        sentry_sdk.capture_exception(e)
        record_admission("error", "fail_open")
        return AdmissionResult.unmetered(inputs.model_type)

    cookie_headers: dict[str, str] = {}
    if result.minted_anon_id:
        services.identity_resolver.set_cookie(response, result.minted_anon_id)
        cookie_headers["set-cookie"] = services.identity_resolver.cookie_header(
            result.minted_anon_id
        )

    result.raise_for_denial(cookie_headers)

    for name, value in result.response_headers().items():
        response.headers[name] = value
    return result
