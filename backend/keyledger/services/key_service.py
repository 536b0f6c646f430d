# Overview: Service-layer operations for keys; issuance against balance, lookup, and revocation.

"""
Key Issuance Service

WHY: A key is bought with account balance. The debit, its ledger row and
the key row are one atomic unit: either all three exist or none do.

DESIGN PRINCIPLES:
- Pricing comes from the injected PricingCatalog, never a module global.
- The key stores the price it was sold at; later catalog changes never
  touch existing keys.
- Key codes come from a bounded CodeGenerator; the unique constraint on
  keys.code is the final arbiter and a lost race retries the whole unit.
- Deactivation only ever moves is_active from True to False.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import Forbidden, KeyNotFound, ValidationError
from ..extensions import db
from ..models import Key, TXN_DEBIT
from ..validation import normalize_key_code, require_device_limit
from .code_generator import CodeGenerator, key_code_generator
from .concurrency import RetryableConflict, run_with_retry
from .ledger_service import REASON_KEY_PURCHASE, REFERENCE_KEY, get_account, post_entry
from .pricing import PricingCatalog
from keyledger.time_utils import add_millis, utcnow


DEACTIVATED_EXPIRED = "EXPIRED"
DEACTIVATED_REVOKED = "REVOKED"

KEY_STATUS_FILTERS = ("active", "expired")


# =============================================================================
# ISSUANCE
# =============================================================================

def issue_key(
    account_id: int,
    tier_id: str,
    device_limit: int = 1,
    *,
    catalog: PricingCatalog,
    generator: CodeGenerator | None = None,
    deadline: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Key:
    """
    Issue a key for a pricing tier, paid from the account balance.

    Args:
        account_id: Paying account (becomes the key owner)
        tier_id: Pricing tier id from the catalog
        device_limit: Maximum number of bound devices (1..MAX_DEVICE_LIMIT)
        catalog: Pricing catalog in force for this call
        generator: Code generator (defaults to the configured key generator)
        deadline: Abort the unit if not committed by this time (UTC)

    Returns:
        The persisted Key; key.transaction is the paying debit.

    Raises:
        ValidationError, AccountNotFound, InsufficientBalance,
        GenerationExhausted, Conflict, DeadlineExceeded, StorageFault
    """
    max_limit = current_app.config.get("MAX_DEVICE_LIMIT", 10)
    device_limit = require_device_limit(device_limit, max_limit)
    tier = catalog.get(tier_id)
    generator = generator or key_code_generator()

    def _exists(code: str) -> bool:
        return db.session.query(Key.id).filter_by(code=code).first() is not None

    def _op() -> Key:
        issued_at = now or utcnow()
        code = generator.generate(_exists)

        txn = post_entry(
            account_id=account_id,
            txn_type=TXN_DEBIT,
            amount=tier.price,
            reason=REASON_KEY_PURCHASE,
            reference_type=REFERENCE_KEY,
            reference_id=code,
            description=f"Generated {tier.tier_id} key",
            now=issued_at,
        )

        key = Key(
            code=code,
            account_id=account_id,
            tier_id=tier.tier_id,
            price=tier.price,
            device_limit=device_limit,
            bound_device_count=0,
            issued_at=issued_at,
            expires_at=add_millis(issued_at, tier.duration_millis),
            is_active=True,
            transaction_id=txn.id,
        )
        db.session.add(key)
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Another unit committed the same code after our existence check
            raise RetryableConflict(str(exc)) from exc
        return key

    key = run_with_retry(_op, deadline=deadline)
    current_app.logger.info(
        "Issued key %s (tier %s, price %d, devices %d) for account %s",
        key.code, key.tier_id, key.price, key.device_limit, key.account_id,
    )
    return key


# =============================================================================
# QUERIES
# =============================================================================

def _authorize(key: Key, account_id: int | None, is_admin: bool) -> None:
    if is_admin:
        return
    if account_id is None or key.account_id != account_id:
        raise Forbidden("Not authorized to access this key")


def get_key(key_code: str, *, account_id: int | None = None, is_admin: bool = False) -> Key:
    """
    Key details for its owner or an admin.

    Raises KeyNotFound / Forbidden.
    """
    code = normalize_key_code(key_code)
    key = db.session.query(Key).filter_by(code=code).first()
    if not key:
        raise KeyNotFound(f"Key {code} not found")
    _authorize(key, account_id, is_admin)
    return key


def list_account_keys(
    account_id: int,
    *,
    status: str | None = None,
    now: Optional[datetime] = None,
) -> list[Key]:
    """
    Keys owned by an account, newest first.

    status:
    - None: all keys
    - "active": is_active and not past expires_at
    - "expired": deactivated (expired or revoked) or past expires_at
    """
    get_account(account_id)
    if status is not None and status not in KEY_STATUS_FILTERS:
        raise ValidationError(f"status must be one of {list(KEY_STATUS_FILTERS)}")

    current = now or utcnow()
    q = db.session.query(Key).filter(Key.account_id == account_id)
    if status == "active":
        q = q.filter(Key.is_active.is_(True), Key.expires_at > current)
    elif status == "expired":
        q = q.filter(db.or_(Key.is_active.is_(False), Key.expires_at <= current))

    return q.order_by(Key.issued_at.desc(), Key.id.desc()).all()


# =============================================================================
# REVOCATION / EXPIRY
# =============================================================================

def deactivate_key(
    key_code: str,
    *,
    account_id: int | None = None,
    is_admin: bool = False,
    deadline: Optional[datetime] = None,
) -> Key:
    """
    Revoke a key (is_active -> False). Idempotent: an inactive key is
    returned unchanged, and nothing ever re-activates it.
    """
    code = normalize_key_code(key_code)

    def _op() -> Key:
        key = db.session.query(Key).filter_by(code=code).first()
        if not key:
            raise KeyNotFound(f"Key {code} not found")
        _authorize(key, account_id, is_admin)

        db.session.execute(
            update(Key)
            .where(Key.id == key.id, Key.is_active.is_(True))
            .values(
                is_active=False,
                deactivated_at=utcnow(),
                deactivation_reason=DEACTIVATED_REVOKED,
            )
            .execution_options(synchronize_session=False)
        )
        return key

    key = run_with_retry(_op, deadline=deadline)
    current_app.logger.info("Key %s deactivated", code)
    return key


def expire_stale_keys(now: Optional[datetime] = None) -> int:
    """
    Persist is_active=False for every active key past expires_at.

    Returns the number of keys expired by this sweep.
    """
    current = now or utcnow()

    def _op() -> int:
        result = db.session.execute(
            update(Key)
            .where(Key.is_active.is_(True), Key.expires_at <= current)
            .values(
                is_active=False,
                deactivated_at=current,
                deactivation_reason=DEACTIVATED_EXPIRED,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    expired = run_with_retry(_op)
    if expired:
        current_app.logger.info("Expired %d stale key(s)", expired)
    return expired
