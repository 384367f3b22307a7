"""
Domain exceptions and HTTP exception factories.

Admission denials are raised as AdmissionError subclasses and turned into
429 responses by the handlers in src.utils.error_handlers. Plain request
errors use the APIExceptions factories.

Usage:
    from src.utils.exceptions import APIExceptions, QuotaExceeded

    raise APIExceptions.bad_request("modelType must be 'quick' or 'premium'")
"""

from typing import TYPE_CHECKING, Any

from fastapi import HTTPException

if TYPE_CHECKING:
    from src.services.global_capacity_guard import CapacitySnapshot
    from src.services.usage_ledger import UsageDecision


class AdmissionError(Exception):
    """Base class for requests denied by an admission guard"""

    limit_type = "admission"

    def __init__(self, message: str, headers: dict[str, str] | None = None):
        super().__init__(message)
        self.headers: dict[str, str] = dict(headers or {})


class CapacityExceeded(AdmissionError):
    """The global generation budget for the current window is spent"""

    limit_type = "global_capacity"

    def __init__(self, snapshot: "CapacitySnapshot", headers: dict[str, str] | None = None):
        super().__init__("Global generation capacity exceeded", headers)
        self.snapshot = snapshot


class AbuseDetected(AdmissionError):
    """A single source IP exceeded the suspicious-activity threshold"""

    limit_type = "suspicious_activity"

    def __init__(self, retry_after: int, headers: dict[str, str] | None = None):
        super().__init__("Suspicious request rate from source IP", headers)
        self.retry_after = retry_after


class QuotaExceeded(AdmissionError):
    """The identity has no free generations or credits left for this request"""

    limit_type = "quota"

    def __init__(
        self,
        decision: "UsageDecision",
        upgrade_url: str,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(f"Generation quota exceeded for tier {decision.tier.value}", headers)
        self.decision = decision
        self.upgrade_url = upgrade_url


class PersistenceError(Exception):
    """Reading or writing the profile or anonymous-usage store failed"""


class InsufficientCredits(ValueError):
    """A debit was larger than the available credit balance"""

    def __init__(self, balance: int, requested: int):
        super().__init__(f"Insufficient credits: balance {balance}, requested {requested}")
        self.balance = balance
        self.requested = requested


class APIExceptions:
    """Factory class for creating standardized HTTP exceptions."""

    @staticmethod
    def bad_request(detail: str = "Bad request") -> HTTPException:
        """400 Bad Request - Invalid request parameters."""
        return HTTPException(status_code=400, detail=detail)

    @staticmethod
    def unauthorized(detail: str = "Unauthorized") -> HTTPException:
        """
        401 Unauthorized - Authentication failed.

        Args:
            detail: Custom error message

        Returns:
            HTTPException with status 401
        """
        return HTTPException(status_code=401, detail=detail)

    @staticmethod
    def not_found(resource: str = "Resource") -> HTTPException:
        """404 Not Found - Resource doesn't exist."""
        return HTTPException(status_code=404, detail=f"{resource} not found")

    @staticmethod
    def payload_too_large(max_bytes: int) -> HTTPException:
        """413 Payload Too Large - Upload exceeds the configured size."""
        return HTTPException(
            status_code=413, detail=f"Upload exceeds maximum size of {max_bytes} bytes"
        )

    @staticmethod
    def rate_limited(
        detail: str = "Too many requests. Please try again later.",
        retry_after: int | None = None,
    ) -> HTTPException:
        """429 Too Many Requests - Plain per-endpoint limit."""
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
        return HTTPException(status_code=429, detail=detail, headers=headers)

    @staticmethod
    def bad_gateway(detail: str = "Image generation failed") -> HTTPException:
        """502 Bad Gateway - Upstream generation API failed."""
        return HTTPException(status_code=502, detail=detail)

    @staticmethod
    def service_unavailable(detail: str = "Service temporarily unavailable") -> HTTPException:
        """503 Service Unavailable - A required dependency is down or unconfigured."""
        return HTTPException(status_code=503, detail=detail)


def error_body(message: str, code: str, /, **extra: Any) -> dict[str, Any]:
    return {"error": message, "code": code, **extra}
