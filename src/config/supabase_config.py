import logging
import threading
import time

import sentry_sdk
from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_client_lock = threading.Lock()
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.

    A failed initialization is remembered for ERROR_CACHE_TTL seconds so a
    broken configuration doesn't trigger a connection attempt per request.

    Raises:
        RuntimeError: If the client cannot be created
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    with _client_lock:
        if _supabase_client is not None:
            return _supabase_client

        if _last_error is not None:
            time_since_error = time.time() - _last_error_time
            if time_since_error < ERROR_CACHE_TTL:
                retry_in = int(ERROR_CACHE_TTL - time_since_error)
                raise RuntimeError(
                    f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
                ) from _last_error
            logger.info("Error cache expired, retrying Supabase initialization...")
            _last_error = None
            _last_error_time = 0

        try:
            Config.validate()

            if not Config.SUPABASE_URL.startswith(("http://", "https://")):
                raise RuntimeError(
                    f"SUPABASE_URL must start with 'http://' or 'https://'. "
                    f"Current value: '{Config.SUPABASE_URL}'"
                )

            masked_url = Config.SUPABASE_URL[:30] + "..." if len(Config.SUPABASE_URL) > 30 else Config.SUPABASE_URL
            logger.info(f"Initializing Supabase client with URL: {masked_url}")

            _supabase_client = create_client(
                supabase_url=Config.SUPABASE_URL,
                supabase_key=Config.SUPABASE_KEY,
                options=ClientOptions(
                    postgrest_client_timeout=30,
                    schema="public",
                    headers={"X-Client-Info": f"{Config.SERVICE_NAME}/1.0"},
                ),
            )
            return _supabase_client

        except Exception as e:
            _last_error = e
            _last_error_time = time.time()
            logger.error(
                f"❌ Failed to initialize Supabase client: {type(e).__name__}: {e}",
                exc_info=True,
            )
            sentry_sdk.capture_exception(e)
            raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def reset_supabase_client() -> None:
    """Drop the cached client and error state (used by tests)"""
    global _supabase_client, _last_error, _last_error_time
    with _client_lock:
        _supabase_client = None
        _last_error = None
        _last_error_time = 0
