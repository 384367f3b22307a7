"""
Utilities for converting global capacity snapshots to HTTP headers
"""

import math
import time
from typing import Dict, Optional

from src.services.global_capacity_guard import CapacitySnapshot


def get_rate_limit_headers(
    snapshot: CapacitySnapshot, now: Optional[float] = None, *, denied: bool = False
) -> Dict[str, str]:
    """Convert a CapacitySnapshot into HTTP headers for the response.

    Returns a dictionary of HTTP headers like:
    {
        "RateLimit-Limit": "100",
        "RateLimit-Remaining": "42",
        "RateLimit-Reset": "1800",
        "X-RateLimit-Limit": "100",
        "X-RateLimit-Remaining": "42",
        "X-RateLimit-Reset": "1700000000",
    }

    RateLimit-Reset is seconds until the window rolls over; X-RateLimit-Reset
    is the absolute epoch timestamp. Retry-After is added on denials.
    """
    now = time.time() if now is None else now
    seconds_to_reset = max(0, math.ceil(snapshot.reset_at - now))

    headers = {
        # IETF draft standard headers (RateLimit-*)
        "RateLimit-Limit": str(snapshot.limit),
        "RateLimit-Remaining": str(snapshot.remaining),
        "RateLimit-Reset": str(seconds_to_reset),
        # Legacy X-RateLimit-* headers
        "X-RateLimit-Limit": str(snapshot.limit),
        "X-RateLimit-Remaining": str(snapshot.remaining),
        "X-RateLimit-Reset": str(int(snapshot.reset_at)),
    }

    if denied:
        headers["Retry-After"] = str(seconds_to_reset)

    return headers
