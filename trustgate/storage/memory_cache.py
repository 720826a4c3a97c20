from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from trustgate.storage.models import utcnow
from trustgate.storage.redis_cache import (
    CONSUME_EMAIL_REQUIRED,
    CONSUME_EXPIRED,
    CONSUME_INVALID,
    CONSUME_MFA_REQUIRED,
    CONSUME_OK,
)


class MemoryCache:
    """In-process stand-in for RedisCache with the same async surface.

    Entries are stored as JSON strings with an absolute expiry and evicted on
    read. Every operation runs under one lock, which gives consume_challenge
    and set_flag the same single-step semantics as the Redis scripts.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._entries: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def _live_entry(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    async def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))
        with self._lock:
            self._entries[key] = (json.dumps(value), expires_at)

    async def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            return None
        try:
            return json.loads(entry[0])
        except (json.JSONDecodeError, TypeError):
            return None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key)
        if entry is None:
            return -2
        expires_at = entry[1]
        if expires_at is None:
            return -1
        return max(0, int((expires_at - self._clock()).total_seconds()))

    async def set_flag(self, key: str, field: str) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            raw, expires_at = entry
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                return False
            if not isinstance(data, dict):
                return False
            data[field] = True
            self._entries[key] = (json.dumps(data), expires_at)
            return True

    async def consume_challenge(self, key: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return CONSUME_EXPIRED, None
            try:
                data = json.loads(entry[0])
            except (json.JSONDecodeError, TypeError):
                return CONSUME_INVALID, None
            if not isinstance(data, dict):
                return CONSUME_INVALID, None
            if data.get("email_verified") is not True:
                return CONSUME_EMAIL_REQUIRED, None
            if data.get("requires_mfa") is True and data.get("mfa_verified") is not True:
                return CONSUME_MFA_REQUIRED, None
            self._entries.pop(key, None)
            return CONSUME_OK, data
