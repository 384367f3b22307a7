import os
from pathlib import Path

from dotenv import load_dotenv

from src.config import usage_limits

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_int_env(name: str, default: int) -> int:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {value!r}") from e


def _get_bool_env(name: str, default: bool = False) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _get_list_env(name: str) -> list[str]:
    value = _get_env_var(name, "")
    return [item.strip() for item in value.split(",") if item.strip()]


_project_root = Path(__file__).resolve().parents[2]


def _resolve_path_env(var_name: str, default: Path) -> Path:
    """Resolve a filesystem path from environment variables with fallback."""
    value = os.environ.get(var_name)
    if not value:
        return default
    return Path(value).expanduser().resolve()


class Config:
    """Configuration class for the application"""

    # Environment Configuration
    APP_ENV = os.environ.get("APP_ENV", "development")
    IS_PRODUCTION = APP_ENV == "production"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or _get_bool_env("TESTING")
    PORT = _get_int_env("PORT", 8000)

    # Supabase Configuration
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Image generation (Gemini)
    GEMINI_API_KEY = _get_env_var("GEMINI_API_KEY")
    GEMINI_BASE_URL = _get_env_var(
        "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
    )
    GEMINI_QUICK_MODEL = _get_env_var("GEMINI_QUICK_MODEL", "gemini-2.5-flash-image")
    GEMINI_PREMIUM_MODEL = _get_env_var("GEMINI_PREMIUM_MODEL", "gemini-3-pro-image-preview")
    GENERATION_TIMEOUT_SECONDS = _get_int_env("GENERATION_TIMEOUT_SECONDS", 120)
    REFERENCE_PHOTOS_DIR = _resolve_path_env(
        "REFERENCE_PHOTOS_DIR", _project_root / "public" / "reference-photos"
    )
    MAX_UPLOAD_BYTES = _get_int_env("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)

    # Privileged access
    ADMIN_PASSWORD = _get_env_var("ADMIN_PASSWORD")
    ADMIN_SESSION_TTL_SECONDS = _get_int_env("ADMIN_SESSION_TTL_SECONDS", 24 * 60 * 60)
    # Test-mode bypass is disabled unless this is explicitly configured
    TEST_MODE_SECRET = _get_env_var("TEST_MODE_SECRET")

    # Reverse proxies allowed to set X-Forwarded-For (CIDR list)
    TRUSTED_PROXIES = _get_list_env("TRUSTED_PROXIES")

    # Anonymous identity cookie
    ANON_COOKIE_NAME = _get_env_var("ANON_COOKIE_NAME", "anon_id")
    ANON_COOKIE_SECRET = _get_env_var("ANON_COOKIE_SECRET")
    ANON_COOKIE_MAX_AGE = _get_int_env("ANON_COOKIE_MAX_AGE", 365 * 24 * 60 * 60)

    # Admission guards
    GLOBAL_GENERATION_LIMIT = _get_int_env(
        "GLOBAL_GENERATION_LIMIT", usage_limits.GLOBAL_GENERATION_LIMIT
    )
    GLOBAL_GENERATION_WINDOW_SECONDS = _get_int_env(
        "GLOBAL_GENERATION_WINDOW_SECONDS", usage_limits.GLOBAL_GENERATION_WINDOW_SECONDS
    )
    ABUSE_REQUEST_THRESHOLD = _get_int_env(
        "ABUSE_REQUEST_THRESHOLD", usage_limits.ABUSE_REQUEST_THRESHOLD
    )
    ABUSE_WINDOW_SECONDS = _get_int_env("ABUSE_WINDOW_SECONDS", usage_limits.ABUSE_WINDOW_SECONDS)
    ABUSE_RETENTION_SECONDS = _get_int_env(
        "ABUSE_RETENTION_SECONDS", usage_limits.ABUSE_RETENTION_SECONDS
    )
    UPGRADE_URL = _get_env_var("UPGRADE_URL", "/pricing")

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED")
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = float(_get_env_var("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Grafana Loki Configuration
    LOKI_ENABLED = _get_bool_env("LOKI_ENABLED")
    LOKI_PUSH_URL = _get_env_var("LOKI_PUSH_URL", "http://loki:3100/loki/api/v1/push")
    SERVICE_NAME = _get_env_var("SERVICE_NAME", "swap-studio-api")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")
        if cls.IS_PRODUCTION and not cls.ANON_COOKIE_SECRET:
            missing_vars.append("ANON_COOKIE_SECRET")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "ANON_COOKIE_SECRET=random_secret_for_signing_anonymous_ids"
            )

        return True

    @classmethod
    def get_supabase_config(cls):
        """Get Supabase configuration as a tuple"""
        return cls.SUPABASE_URL, cls.SUPABASE_KEY
