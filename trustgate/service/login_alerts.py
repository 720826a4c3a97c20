"""Login anomaly detection.

A login is compared against the user's recent non-revoked sessions for three
signals: an unseen device/subnet hash, a location far from every known one,
and an unseen browser family. Two or more signals make the login suspicious.

Alerts are advisory. ``check`` never raises and never blocks a login; every
upstream failure (geolocation, repository writes, email) is logged and the
result so far is returned.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from trustgate.config import Settings
from trustgate.logging import correlation_scope, get_logger
from trustgate.service.fingerprint import (
    UNKNOWN,
    alerting_subnet,
    hash_for_alerting,
    parse_user_agent,
)
from trustgate.service.geolocation import (
    GeoLocation,
    GeoResolver,
    format_location,
    is_significantly_different,
)
from trustgate.service.notifications import LOGIN_ALERT, NotificationDispatcher
from trustgate.storage.models import LoginAlert, LoginSession, User, new_id, utcnow

logger = get_logger(__name__)

NEW_DEVICE = "new_device"
NEW_LOCATION = "new_location"
NEW_BROWSER = "new_browser"

LOGIN_ALERT_TYPE = "login_alert"
SUSPICIOUS_LOGIN_TYPE = "suspicious_login"


@dataclass
class LoginCheckResult:
    is_new_device: bool = False
    is_new_location: bool = False
    is_new_browser: bool = False
    is_suspicious: bool = False
    alerts: List[str] = field(default_factory=list)

    @property
    def flag_count(self) -> int:
        return sum((self.is_new_device, self.is_new_location, self.is_new_browser))


class LoginHistoryRepository(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_recent_sessions(self, user_id: str, limit: int = 10) -> List[LoginSession]: ...

    def create_login_alert(self, alert: LoginAlert) -> LoginAlert: ...

    def list_login_alerts(self, user_id: str, limit: int = 20) -> List[LoginAlert]: ...

    def acknowledge_login_alert(
        self, alert_id: str, user_id: str, acknowledged_at: datetime
    ) -> bool: ...

    def claim_alert_fingerprint(
        self,
        user_id: str,
        alert_type: str,
        fingerprint: str,
        *,
        since: datetime,
        now: datetime,
    ) -> bool: ...


def alert_fingerprint(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """Dedup key for one login context: browser, OS and /24 subnet."""
    parsed = parse_user_agent(user_agent)
    data = f"{parsed.browser}|{parsed.os}|{alerting_subnet(ip_address)}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def session_location(session: LoginSession) -> Optional[GeoLocation]:
    location = GeoLocation(
        city=session.location_city,
        country=session.location_country,
        country_code=session.location_country_code,
        latitude=session.latitude,
        longitude=session.longitude,
    )
    if not (location.city or location.country or location.has_coordinates):
        return None
    return location


class LoginAnomalyDetector:
    def __init__(
        self,
        repository: LoginHistoryRepository,
        *,
        geo_resolver: Optional[GeoResolver] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        settings = settings or Settings()
        self.repository = repository
        self.geo_resolver = geo_resolver
        self.dispatcher = dispatcher
        self.history_limit = settings.login_history_limit
        self.distance_threshold_km = settings.location_distance_threshold_km
        self.cooldowns: Dict[str, int] = {
            LOGIN_ALERT_TYPE: settings.login_alert_cooldown_seconds,
            SUSPICIOUS_LOGIN_TYPE: settings.suspicious_login_cooldown_seconds,
        }
        self.default_cooldown = settings.default_alert_cooldown_seconds
        self._clock = clock or utcnow

    def cooldown_for(self, alert_type: str) -> timedelta:
        return timedelta(seconds=self.cooldowns.get(alert_type, self.default_cooldown))

    async def _locate(self, ip_address: Optional[str]) -> Optional[GeoLocation]:
        if not ip_address or self.geo_resolver is None:
            return None
        try:
            return await self.geo_resolver.locate(ip_address)
        except Exception as exc:
            logger.warning(
                "login_geolocation_failed", error_type=type(exc).__name__, error=str(exc)
            )
            return None

    async def check(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginCheckResult:
        result = LoginCheckResult()
        with correlation_scope():
            try:
                await self._check(result, user_id, ip_address, user_agent)
            except Exception as exc:
                logger.error(
                    "login_check_failed",
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return result

    async def _check(
        self,
        result: LoginCheckResult,
        user_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        user = self.repository.get_user(user_id)
        if user is None or not user.login_notification_enabled:
            return

        sessions = self.repository.list_recent_sessions(user_id, limit=self.history_limit)
        if not sessions:
            # Nothing to compare against on the first login
            return

        device = parse_user_agent(user_agent)
        current_location = await self._locate(ip_address)

        known_hashes = {hash_for_alerting(s.user_agent, s.ip_address) for s in sessions}
        if hash_for_alerting(user_agent, ip_address) not in known_hashes:
            result.is_new_device = True
            result.alerts.append("New device detected")

        if current_location is not None:
            similar = False
            for session in sessions:
                previous = session_location(session)
                if previous is None:
                    continue
                if not is_significantly_different(
                    current_location, previous, self.distance_threshold_km
                ):
                    similar = True
                    break
            if not similar:
                result.is_new_location = True
                result.alerts.append(f"New location: {format_location(current_location)}")

        known_browsers = {s.browser.lower() for s in sessions if s.browser}
        if (
            device.browser != UNKNOWN
            and known_browsers
            and device.browser.lower() not in known_browsers
        ):
            result.is_new_browser = True
            result.alerts.append(f"New browser: {device.browser}")

        result.is_suspicious = result.flag_count >= 2
        if not result.alerts:
            return

        alert_type = SUSPICIOUS_LOGIN_TYPE if result.is_suspicious else LOGIN_ALERT_TYPE
        now = self._clock()
        claimed = self.repository.claim_alert_fingerprint(
            user_id,
            alert_type,
            alert_fingerprint(user_agent, ip_address),
            since=now - self.cooldown_for(alert_type),
            now=now,
        )
        if not claimed:
            logger.info("login_alert_deduplicated", user_id=user_id, alert_type=alert_type)
            return

        flags = [
            (NEW_DEVICE, result.is_new_device),
            (NEW_LOCATION, result.is_new_location),
            (NEW_BROWSER, result.is_new_browser),
        ]
        location_dict = current_location.to_dict() if current_location else {}
        for kind, fired in flags:
            if not fired:
                continue
            self.repository.create_login_alert(
                LoginAlert(
                    id=new_id(),
                    user_id=user_id,
                    alert_type=kind,
                    ip_address=ip_address,
                    device_info=device.to_dict(),
                    location=dict(location_dict),
                    is_suspicious=result.is_suspicious,
                    created_at=now,
                    email_sent_at=now if self.dispatcher is not None else None,
                )
            )
        logger.info(
            "login_alert_created",
            user_id=user_id,
            alert_type=alert_type,
            flags=[kind for kind, fired in flags if fired],
        )

        if self.dispatcher is not None:
            self.dispatcher.submit(
                user.email,
                LOGIN_ALERT,
                {
                    "first_name": user.first_name,
                    "reasons": list(result.alerts),
                    "device_name": device.device_name,
                    "browser": device.browser,
                    "os": device.os,
                    "location": format_location(current_location),
                    "ip_address": ip_address,
                    "is_suspicious": result.is_suspicious,
                    "login_time": now.isoformat(),
                },
            )

    def list_alerts(self, user_id: str, limit: int = 20) -> List[LoginAlert]:
        return self.repository.list_login_alerts(user_id, limit=limit)

    def acknowledge(self, alert_id: str, user_id: str) -> bool:
        return self.repository.acknowledge_login_alert(alert_id, user_id, self._clock())
