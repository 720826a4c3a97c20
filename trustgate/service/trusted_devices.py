from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from trustgate.logging import get_logger, log_audit_event
from trustgate.service.fingerprint import DeviceContext, parse_user_agent, trust_hash_for
from trustgate.storage.models import TrustedDevice, utcnow

logger = get_logger(__name__)

DEFAULT_TRUST_DAYS = 30


class TrustedDeviceRepository(Protocol):
    def upsert_trusted_device(
        self, user_id: str, device_hash: str, **fields
    ) -> Tuple[TrustedDevice, bool]: ...

    def find_trusted_device(self, user_id: str, device_hash: str) -> Optional[TrustedDevice]: ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]: ...

    def delete_trusted_device(self, device_id: str, user_id: str) -> Optional[TrustedDevice]: ...

    def delete_user_trusted_devices(self, user_id: str) -> int: ...

    def delete_expired_trusted_devices(self, now: datetime) -> int: ...


class TrustedDeviceService:
    """Devices allowed to skip MFA for a limited period.

    Records are keyed by (user, trust hash). Expired records are ignored on
    read and removed by ``purge_expired``.
    """

    def __init__(
        self,
        repository: TrustedDeviceRepository,
        *,
        trust_days: int = DEFAULT_TRUST_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.trust_days = trust_days
        self._clock = clock or utcnow

    def trust(self, user_id: str, device: DeviceContext) -> TrustedDevice:
        """Trust ``device`` for ``trust_days``, extending an existing record."""
        now = self._clock()
        parsed = parse_user_agent(device.user_agent)
        trusted_until = now + timedelta(days=self.trust_days)
        record, created = self.repository.upsert_trusted_device(
            user_id,
            trust_hash_for(device),
            trusted_until=trusted_until,
            device_name=parsed.device_name,
            browser=parsed.browser,
            os=parsed.os,
            ip_address=device.ip_address,
            created_at=now,
        )
        log_audit_event(
            "device_trust" if created else "device_trust_extended",
            user_id=user_id,
            resource_type="trusted_device",
            resource_id=record.id,
            logger=logger,
            device_name=parsed.device_name,
            trusted_until=trusted_until.isoformat(),
        )
        return record

    def is_trusted(self, user_id: str, device: DeviceContext) -> bool:
        record = self.repository.find_trusted_device(user_id, trust_hash_for(device))
        return bool(record and record.is_active(self._clock()))

    def list(self, user_id: str) -> List[TrustedDevice]:
        now = self._clock()
        return [d for d in self.repository.list_trusted_devices(user_id) if d.is_active(now)]

    def untrust_one(self, device_id: str, user_id: str) -> bool:
        removed = self.repository.delete_trusted_device(device_id, user_id)
        if removed is None:
            return False
        log_audit_event(
            "device_untrust",
            user_id=user_id,
            resource_type="trusted_device",
            resource_id=device_id,
            logger=logger,
            device_name=removed.device_name,
        )
        return True

    def untrust_all(self, user_id: str) -> int:
        count = self.repository.delete_user_trusted_devices(user_id)
        if count:
            log_audit_event(
                "device_untrust_all",
                user_id=user_id,
                resource_type="trusted_device",
                logger=logger,
                count=count,
            )
        return count

    def purge_expired(self) -> int:
        count = self.repository.delete_expired_trusted_devices(self._clock())
        if count:
            logger.info("trusted_devices_purged", count=count)
        return count
