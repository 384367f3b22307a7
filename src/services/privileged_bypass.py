"""
Privileged bypass paths.

A valid admin session token or the configured test-mode secret replaces the
whole admission decision with "admit, unbounded, free". Each path is logged
and counted on its own so privileged usage can be audited separately.
"""

import logging
import secrets
from collections.abc import Mapping
from enum import Enum
from typing import Protocol

from src.config.tiers import Tier
from src.services.prometheus_metrics import privileged_admissions

logger = logging.getLogger(__name__)

ADMIN_TOKEN_HEADER = "X-Admin-Token"
TEST_MODE_HEADER = "X-Test-Mode-Secret"


class AdminSessionValidator(Protocol):
    def is_valid_admin_session(self, token: str | None) -> bool: ...


class BypassKind(str, Enum):
    ADMIN = "admin"
    TEST_MODE = "test"

    @property
    def tier(self) -> Tier:
        return Tier.ADMIN if self is BypassKind.ADMIN else Tier.TEST


class PrivilegedBypass:
    def __init__(self, admin_sessions: AdminSessionValidator, test_mode_secret: str | None = None):
        self._admin_sessions = admin_sessions
        # An empty secret must never enable the test-mode path
        self._test_mode_secret = test_mode_secret.encode("utf-8") if test_mode_secret else None
        if self._test_mode_secret:
            logger.warning("[TEST-MODE] Test-mode bypass is enabled")

    @property
    def admin_sessions(self) -> AdminSessionValidator:
        return self._admin_sessions

    @property
    def test_mode_enabled(self) -> bool:
        return self._test_mode_secret is not None

    def _is_test_mode(self, presented: str | None) -> bool:
        if self._test_mode_secret is None or not presented:
            return False
        return secrets.compare_digest(presented.encode("utf-8"), self._test_mode_secret)

    def is_admin(self, headers: Mapping[str, str]) -> bool:
        return self._admin_sessions.is_valid_admin_session(headers.get(ADMIN_TOKEN_HEADER))

    def qualifies(self, headers: Mapping[str, str]) -> bool:
        """Like check(), without logging or counting the admission."""
        return self.is_admin(headers) or self._is_test_mode(headers.get(TEST_MODE_HEADER))

    def check(self, headers: Mapping[str, str], path: str = "") -> BypassKind | None:
        """
        Return the bypass kind a request qualifies for, if any.

        Admin sessions are checked first. Header lookup is expected to be
        case-insensitive (Starlette Headers).
        """
        if self.is_admin(headers):
            logger.warning(f"[ADMIN] Privileged admission on {path}")
            privileged_admissions.labels(kind=BypassKind.ADMIN.value).inc()
            return BypassKind.ADMIN

        if self._is_test_mode(headers.get(TEST_MODE_HEADER)):
            logger.warning(f"[TEST-MODE] Privileged admission on {path}")
            privileged_admissions.labels(kind=BypassKind.TEST_MODE.value).inc()
            return BypassKind.TEST_MODE

        return None
