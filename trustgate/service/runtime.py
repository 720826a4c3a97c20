from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from trustgate.config import get_settings, reset_settings_cache
from trustgate.logging import get_logger
from trustgate.service.challenge import CriticalActionChallengeService
from trustgate.service.geolocation import GeoResolver, HttpGeoResolver
from trustgate.service.login_alerts import LoginAnomalyDetector
from trustgate.service.mfa import TotpMfaVerifier
from trustgate.service.notifications import EmailNotifier, NotificationDispatcher
from trustgate.service.trusted_devices import TrustedDeviceService
from trustgate.service.verification import PolicyCache, VerificationService
from trustgate.storage.memory import MemoryStore
from trustgate.storage.memory_cache import MemoryCache
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

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
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances wired from settings."""

    def __init__(self, *, store: Optional[MemoryStore] = None):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = store or MemoryStore()

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for critical action challenges and the tenant policy cache; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; challenges and cached "
                    "tenant policies live in process memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.notifier = EmailNotifier.from_settings(self.settings)
        self.dispatcher = NotificationDispatcher(self.notifier)
        self.mfa = TotpMfaVerifier(self.store)

        self.geo_resolver: Optional[GeoResolver] = None
        if self.settings.geoip_url:
            self.geo_resolver = HttpGeoResolver(
                self.settings.geoip_url, timeout=self.settings.geoip_timeout_seconds
            )

        self.policies = PolicyCache(
            self.store,
            self.cache,
            ttl_seconds=self.settings.tenant_policy_cache_ttl_seconds,
            settings=self.settings,
        )
        self.verification = VerificationService(self.policies)
        self.challenges = CriticalActionChallengeService(
            self.store,
            self.cache,
            self.mfa,
            self.dispatcher,
            ttl_seconds=self.settings.challenge_ttl_seconds,
        )
        self.trusted_devices = TrustedDeviceService(
            self.store, trust_days=self.settings.trusted_device_days
        )
        self.login_alerts = LoginAnomalyDetector(
            self.store,
            geo_resolver=self.geo_resolver,
            dispatcher=self.dispatcher,
            settings=self.settings,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            geolocation_enabled=self.geo_resolver is not None,
            email_configured=self.notifier.is_configured,
        )

    async def shutdown(self) -> None:
        """Flush pending notifications and close the cache connection."""
        await self.dispatcher.drain()
        if self.cache is not None:
            await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
