# Overview: Key validation; device binding state machine with an atomic device cap.

"""
Key Validation Service

STATES (per key):
- Active: is_active and now < expires_at
- Expired: now >= expires_at. Terminal; persisted as is_active=False the
  first time it is observed.
- Revoked: is_active=False set by deactivation. Terminal.
- LimitReached: Active, device set full, requesting device not bound.

RULES (evaluated in one atomic unit per call):
1. Unknown or inactive key -> INVALID_KEY
2. Past expires_at -> persist is_active=False, KEY_EXPIRED
3. Device already bound -> touch last_seen_at, accept (unlimited repeats)
4. Free slot -> bind device, accept
5. Otherwise -> DEVICE_LIMIT_REACHED

CONCURRENCY: step 4 claims a slot with one conditional UPDATE
(bound_device_count < device_limit). Two callers racing for the last slot
cannot both match the predicate, so the cap holds without read-then-write.
A concurrent bind of the SAME device hits the (key_id, device_id) unique
constraint and the unit is retried, where it takes step 3.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    DeviceLimitReached,
    ERROR_KINDS,
    InvalidKey,
    KeyExpired,
    LedgerError,
    ValidationError,
)
from ..extensions import db
from ..models import Key, KeyDevice
from ..validation import normalize_key_code, require_device_id
from .concurrency import RetryableConflict, run_with_retry
from .key_service import DEACTIVATED_EXPIRED
from keyledger.time_utils import utcnow


@dataclass(frozen=True)
class KeyAccepted:
    key_code: str
    tier_id: str
    expires_at: datetime
    device_id: str
    newly_bound: bool
    ok = True


@dataclass(frozen=True)
class KeyRejected:
    kind: str
    message: str
    ok = False

    def to_error(self) -> LedgerError:
        return ERROR_KINDS[self.kind](self.message)


ValidateResult = Union[KeyAccepted, KeyRejected]


def _reject(error_cls: type[LedgerError], message: str | None = None) -> KeyRejected:
    return KeyRejected(kind=error_cls.kind, message=message or error_cls.default_message())


def validate_key(
    key_code: str,
    device_id: str,
    *,
    now: Optional[datetime] = None,
    deadline: Optional[datetime] = None,
) -> ValidateResult:
    """
    Validate a key for a device, binding the device if a slot is free.

    Returns KeyAccepted or KeyRejected (kind is one of VALIDATION_ERROR,
    INVALID_KEY, KEY_EXPIRED, DEVICE_LIMIT_REACHED). Infrastructure
    failures (Conflict, DeadlineExceeded, StorageFault) are raised.
    """
    try:
        code = normalize_key_code(key_code)
        device_id = require_device_id(device_id)
    except ValidationError as exc:
        return _reject(ValidationError, exc.message)

    def _op() -> ValidateResult:
        current = now or utcnow()

        key = db.session.query(Key).filter_by(code=code).populate_existing().first()
        if not key or not key.is_active:
            return _reject(InvalidKey, "Invalid or inactive key")

        if current >= key.expires_at:
            db.session.execute(
                update(Key)
                .where(Key.id == key.id, Key.is_active.is_(True))
                .values(
                    is_active=False,
                    deactivated_at=current,
                    deactivation_reason=DEACTIVATED_EXPIRED,
                )
                .execution_options(synchronize_session=False)
            )
            return _reject(KeyExpired, "Key has expired")

        accepted = KeyAccepted(
            key_code=key.code,
            tier_id=key.tier_id,
            expires_at=key.expires_at,
            device_id=device_id,
            newly_bound=False,
        )

        touched = db.session.execute(
            update(KeyDevice)
            .where(KeyDevice.key_id == key.id, KeyDevice.device_id == device_id)
            .values(last_seen_at=current)
            .execution_options(synchronize_session=False)
        )
        if touched.rowcount:
            return accepted

        claimed = db.session.execute(
            update(Key)
            .where(
                Key.id == key.id,
                Key.is_active.is_(True),
                Key.expires_at > current,
                Key.bound_device_count < Key.device_limit,
            )
            .values(bound_device_count=Key.bound_device_count + 1)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            db.session.refresh(key)
            if not key.is_active:
                return _reject(InvalidKey, "Invalid or inactive key")
            return _reject(DeviceLimitReached, f"Device limit reached ({key.device_limit} devices)")

        db.session.add(KeyDevice(
            key_id=key.id,
            device_id=device_id,
            first_bound_at=current,
            last_seen_at=current,
        ))
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Same device bound by a concurrent call; retry takes the touch path
            raise RetryableConflict(str(exc)) from exc

        return KeyAccepted(
            key_code=key.code,
            tier_id=key.tier_id,
            expires_at=key.expires_at,
            device_id=device_id,
            newly_bound=True,
        )

    return run_with_retry(_op, deadline=deadline)
