"""Rate limiting configuration for the admin backend.

Uses Redis as storage backend when REDIS_URL is set at import time,
otherwise falls back to in-memory storage.

Provides granular per-endpoint rate limits via decorators.
"""
import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

_storage_uri = os.environ.get("REDIS_URL") or "memory://"

# Create limiter with default rate (global fallback)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200/minute"],
    storage_uri=_storage_uri,
)

if _storage_uri != "memory://":
    logger.info("Rate limiter using Redis backend")

# ── Per-endpoint rate limit presets ──────────────────────────
# These are applied via @limiter.limit() decorators on endpoints.

RATE_MUTATIONS = "60/minute"     # validate, cancel
RATE_READ = "120/minute"         # status polling, listings
RATE_BULK = "10/minute"          # bulk operation submission
