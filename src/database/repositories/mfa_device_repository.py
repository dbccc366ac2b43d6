"""MFA Device Repository Implementation.

SQLAlchemy implementation of security.mfa_store.DeviceStore. Counter
updates load the row with SELECT ... FOR UPDATE, apply the mutation and
commit in one transaction, so two concurrent wrong codes on the same
device are both counted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from security.exceptions import NotFoundError
from security.mfa_device import BackupCode, DeviceState, DeviceStatus, DeviceType, MFADevice
from security.mfa_store import DeviceStore

from ..models import MFADeviceRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _device_from_record(record: MFADeviceRecord) -> MFADevice:
    return MFADevice(
        user_id=record.user_id,
        device_type=DeviceType(record.device_type),
        device_name=record.device_name,
        secret=record.secret,
        phone_number=record.phone_number,
        email_address=record.email_address,
        backup_codes=[
            BackupCode(
                code_hash=code["code_hash"],
                used=code.get("used", False),
                used_at=datetime.fromisoformat(code["used_at"]) if code.get("used_at") else None,
            )
            for code in record.backup_codes or []
        ],
        is_primary=record.is_primary,
        state=DeviceState(
            status=DeviceStatus(record.status),
            locked_until=record.locked_until,
            verified=record.verified,
        ),
        failed_attempts=record.failed_attempts,
        usage_count=record.usage_count,
        last_used=record.last_used,
        verified_at=record.verified_at,
        created_at=record.created_at,
        challenge_hash=record.challenge_hash,
        challenge_expires_at=record.challenge_expires_at,
        device_id=record.device_id,
    )


def _apply_device(record: MFADeviceRecord, device: MFADevice) -> None:
    record.user_id = device.user_id
    record.device_type = device.device_type.value
    record.device_name = device.device_name
    record.secret = device.secret
    record.phone_number = device.phone_number
    record.email_address = device.email_address
    record.backup_codes = [
        {
            "code_hash": code.code_hash,
            "used": code.used,
            "used_at": code.used_at.isoformat() if code.used_at else None,
        }
        for code in device.backup_codes
    ]
    record.is_primary = device.is_primary
    record.status = device.state.status.value
    record.verified = device.state.verified
    record.locked_until = device.state.locked_until
    record.failed_attempts = device.failed_attempts
    record.usage_count = device.usage_count
    record.last_used = device.last_used
    record.verified_at = device.verified_at
    record.created_at = device.created_at
    record.challenge_hash = device.challenge_hash
    record.challenge_expires_at = device.challenge_expires_at


class SQLDeviceStore(DeviceStore):
    """Database-backed MFA device store."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def add(self, device: MFADevice) -> MFADevice:
        with self._session_factory.begin() as session:
            record = MFADeviceRecord(device_id=device.device_id)
            _apply_device(record, device)
            session.add(record)
        return device

    def get(self, device_id: str) -> Optional[MFADevice]:
        with self._session_factory() as session:
            record = session.get(MFADeviceRecord, device_id)
            return _device_from_record(record) if record else None

    def list_for_user(self, user_id: str) -> List[MFADevice]:
        query = (
            select(MFADeviceRecord)
            .where(MFADeviceRecord.user_id == user_id)
            .order_by(MFADeviceRecord.created_at)
        )
        with self._session_factory() as session:
            return [_device_from_record(r) for r in session.scalars(query)]

    def update(self, device_id: str, mutate: Callable[[MFADevice], T]) -> T:
        with self._session_factory.begin() as session:
            record = session.scalars(
                select(MFADeviceRecord)
                .where(MFADeviceRecord.device_id == device_id)
                .with_for_update()
            ).first()
            if record is None:
                raise NotFoundError(f"MFA device not found: {device_id}")
            device = _device_from_record(record)
            result = mutate(device)
            _apply_device(record, device)
            return result

    def update_user_devices(self, user_id: str, mutate: Callable[[List[MFADevice]], T]) -> T:
        with self._session_factory.begin() as session:
            records = list(session.scalars(
                select(MFADeviceRecord)
                .where(MFADeviceRecord.user_id == user_id)
                .order_by(MFADeviceRecord.created_at)
                .with_for_update()
            ))
            devices = [_device_from_record(r) for r in records]
            result = mutate(devices)

            by_id = {r.device_id: r for r in records}
            kept = set()
            for device in devices:
                record = by_id.get(device.device_id)
                if record is None:
                    record = MFADeviceRecord(device_id=device.device_id)
                    session.add(record)
                _apply_device(record, device)
                kept.add(device.device_id)
            for record in records:
                if record.device_id not in kept:
                    session.delete(record)
            return result

    def delete_unverified_before(self, cutoff: datetime) -> int:
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(MFADeviceRecord).where(
                    MFADeviceRecord.verified.is_(False),
                    MFADeviceRecord.created_at < cutoff,
                )
            )
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Deleted {removed} unverified MFA devices created before {cutoff.isoformat()}")
        return removed
