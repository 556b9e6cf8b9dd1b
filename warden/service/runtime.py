from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.access import AccessService
from warden.service.auth import AuthService
from warden.storage.memory import MemoryStore
from warden.storage.postgres import PostgresStore
from warden.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Size of the in-process bucket map above which refilled buckets are swept
LOCAL_RATE_LIMIT_SWEEP_THRESHOLD = 1024


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url and not self.settings.test_mode:
            cache = RedisCache(
                self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
            )
            try:
                cache.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_redis_unreachable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )
                raise RuntimeError(
                    "REDIS_URL is set but Redis is unreachable; unset it to use in-process rate limits"
                ) from exc
            self.cache = cache
        else:
            logger.info(
                "rate_limits_in_process",
                message="Rate limits are per-process; set REDIS_URL to share them across replicas.",
            )

        self.auth = AuthService(self.store, self.settings)
        self.access = AccessService(self.store)
        # key -> (tokens, last refill, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, float, float]] = {}
        self._local_rate_limit_lock = threading.Lock()
        self._local_rate_limit_sweep_at = LOCAL_RATE_LIMIT_SWEEP_THRESHOLD

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            max_devices=self.settings.max_devices,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit returning ``(allowed, remaining, retry_after)``.

    Uses Redis when configured and an in-process bucket otherwise. A ``cost``
    of 0 checks that the bucket is not exhausted without consuming from it.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)

    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    needed = max(cost, 1)
    with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
        allowed = tokens >= needed
        if allowed:
            tokens -= max(cost, 0)
        if tokens >= limit:
            # A full bucket is indistinguishable from no bucket
            runtime._local_rate_limits.pop(key, None)
        else:
            full_at = now + (limit - tokens) / refill_rate
            runtime._local_rate_limits[key] = (tokens, now, full_at)
        if len(runtime._local_rate_limits) > runtime._local_rate_limit_sweep_at:
            _sweep_refilled_buckets(runtime, now)
        reset_seconds = 0 if allowed else int((needed - tokens) / refill_rate) + 1
        remaining = int(tokens)
    return allowed, remaining, reset_seconds


def _sweep_refilled_buckets(runtime: Runtime, now: float) -> None:
    """Drop in-process buckets that have refilled; caller holds the lock."""
    refilled = [
        key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now
    ]
    for key in refilled:
        del runtime._local_rate_limits[key]
    # Buckets still draining stay; the next sweep waits for the map to double
    runtime._local_rate_limit_sweep_at = max(
        LOCAL_RATE_LIMIT_SWEEP_THRESHOLD, 2 * len(runtime._local_rate_limits)
    )
    if refilled:
        logger.debug("rate_limit_buckets_swept", swept=len(refilled))
