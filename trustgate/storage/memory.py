from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from trustgate.logging import get_logger
from trustgate.storage.errors import ConstraintViolation
from trustgate.storage.models import (
    LoginAlert,
    LoginSession,
    SecurityAlertLogEntry,
    TenantSecurityPolicy,
    TrustedDevice,
    User,
    UserMFAConfig,
    as_utc,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory repository for principals, policies, devices, sessions and alerts.

    Stands in for the relational store; every method takes the data lock so
    check-then-write sequences are atomic per call.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.tenant_policies: Dict[str, TenantSecurityPolicy] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.sessions: Dict[str, LoginSession] = {}
        self.login_alerts: Dict[str, LoginAlert] = {}
        self.alert_log: List[SecurityAlertLogEntry] = []
        self.mfa_configs: Dict[str, UserMFAConfig] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        *,
        created_at: Optional[datetime] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
        mfa_enabled: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        login_notification_enabled: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                created_at=created_at or utcnow(),
                email_verified=email_verified,
                phone_verified=phone_verified,
                mfa_enabled=mfa_enabled,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                login_notification_enabled=login_notification_enabled,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            updated = replace(user, **changes)
            self.users[user_id] = updated
            return updated

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, email_verified=True)

    def mark_phone_verified(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, phone_verified=True)

    # tenant policy
    def get_tenant_policy(self, tenant_id: str) -> Optional[TenantSecurityPolicy]:
        with self._data_lock:
            return self.tenant_policies.get(tenant_id)

    def save_tenant_policy(self, policy: TenantSecurityPolicy) -> TenantSecurityPolicy:
        with self._data_lock:
            self.tenant_policies[policy.tenant_id] = policy
            return policy

    # trusted devices
    def upsert_trusted_device(
        self,
        user_id: str,
        device_hash: str,
        *,
        trusted_until: datetime,
        device_name: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        ip_address: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> tuple[TrustedDevice, bool]:
        """Insert or extend the trust record for (user_id, device_hash).

        Returns the record and whether it was newly created.
        """
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            for device in self.trusted_devices.values():
                if device.user_id == user_id and device.device_hash == device_hash:
                    device.trusted_until = trusted_until
                    device.ip_address = ip_address
                    return device, False
            device = TrustedDevice(
                id=new_id(),
                user_id=user_id,
                device_hash=device_hash,
                trusted_until=trusted_until,
                device_name=device_name,
                browser=browser,
                os=os,
                ip_address=ip_address,
                created_at=created_at or utcnow(),
            )
            self.trusted_devices[device.id] = device
            return device, True

    def find_trusted_device(
        self, user_id: str, device_hash: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            return next(
                (
                    d
                    for d in self.trusted_devices.values()
                    if d.user_id == user_id and d.device_hash == device_hash
                ),
                None,
            )

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            results = [d for d in self.trusted_devices.values() if d.user_id == user_id]
            return sorted(results, key=lambda d: as_utc(d.created_at), reverse=True)

    def delete_trusted_device(
        self, device_id: str, user_id: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.user_id != user_id:
                return None
            return self.trusted_devices.pop(device_id)

    def delete_user_trusted_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [did for did, d in self.trusted_devices.items() if d.user_id == user_id]
            for did in stale:
                self.trusted_devices.pop(did, None)
            return len(stale)

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                did for did, d in self.trusted_devices.items() if not d.is_active(now)
            ]
            for did in stale:
                self.trusted_devices.pop(did, None)
            return len(stale)

    # session history
    def record_session(self, session: LoginSession) -> LoginSession:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = session
            return session

    def revoke_session(self, session_id: str, revoked_at: Optional[datetime] = None) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.revoked_at = revoked_at or utcnow()

    def list_recent_sessions(self, user_id: str, limit: int = 10) -> List[LoginSession]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.revoked_at is None
            ]
            active.sort(key=lambda s: as_utc(s.created_at), reverse=True)
            return active[:limit]

    # login alerts
    def create_login_alert(self, alert: LoginAlert) -> LoginAlert:
        with self._data_lock:
            self.login_alerts[alert.id] = alert
            return alert

    def list_login_alerts(self, user_id: str, limit: int = 20) -> List[LoginAlert]:
        with self._data_lock:
            results = [a for a in self.login_alerts.values() if a.user_id == user_id]
            results.sort(key=lambda a: as_utc(a.created_at), reverse=True)
            return results[:limit]

    def acknowledge_login_alert(
        self, alert_id: str, user_id: str, acknowledged_at: datetime
    ) -> bool:
        with self._data_lock:
            alert = self.login_alerts.get(alert_id)
            if not alert or alert.user_id != user_id:
                return False
            alert.acknowledged_at = acknowledged_at
            return True

    # alert dedup ledger
    def claim_alert_fingerprint(
        self,
        user_id: str,
        alert_type: str,
        fingerprint: str,
        *,
        since: datetime,
        now: datetime,
    ) -> bool:
        """Record the fingerprint unless one newer than ``since`` exists.

        Returns True when the caller won the slot and should emit the alert.
        """
        with self._data_lock:
            cutoff = as_utc(since)
            for entry in self.alert_log:
                if (
                    entry.user_id == user_id
                    and entry.alert_type == alert_type
                    and entry.fingerprint == fingerprint
                    and as_utc(entry.created_at) > cutoff
                ):
                    return False
            self.alert_log.append(
                SecurityAlertLogEntry(
                    user_id=user_id,
                    alert_type=alert_type,
                    fingerprint=fingerprint,
                    created_at=now,
                )
            )
            return True

    # mfa
    def set_user_mfa_config(
        self, user_id: str, secret: str, backup_code_hashes: Optional[List[str]] = None
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            cfg = UserMFAConfig(
                user_id=user_id,
                secret=secret,
                enabled=True,
                backup_code_hashes=list(backup_code_hashes or []),
            )
            self.mfa_configs[user_id] = cfg
            self.users[user_id] = replace(self.users[user_id], mfa_enabled=True)
            self.logger.info("mfa_config_saved", user_id=user_id, backup_codes=len(cfg.backup_code_hashes))
            return cfg

    def get_user_mfa_config(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            return self.mfa_configs.get(user_id)

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove a backup code digest; returns codes left, or None if absent."""
        with self._data_lock:
            cfg = self.mfa_configs.get(user_id)
            if not cfg or code_hash not in cfg.backup_code_hashes:
                return None
            cfg.backup_code_hashes.remove(code_hash)
            return len(cfg.backup_code_hashes)
