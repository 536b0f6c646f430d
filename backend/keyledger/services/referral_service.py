# Overview: Service-layer operations for referral codes; creation and atomic redemption into balance.

"""
Referral Code Service

WHY: Referral/credit codes top up an account balance. Redemption consumes
one use of the code and credits the account in the same atomic unit.

UNIT OF WORK (redeem):
1. Validate code format; look up code
2. Reject expired / exhausted codes
3. Optional once-per-account guard
4. Conditional UPDATE uses_consumed + 1 WHERE uses_consumed < usage_limit
5. CREDIT the account, referencing the code
6. Record the ReferralRedemption row

POLICY: whether one account may redeem the same code twice is decided by
the caller (once_per_account, default from REDEEM_ONCE_PER_ACCOUNT). The
ledger itself always enforces the global usage_limit.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import (
    CodeAlreadyRedeemed,
    CodeExhausted,
    CodeExpired,
    InvalidCode,
    ValidationError,
)
from ..extensions import db
from ..models import ReferralCode, ReferralRedemption, TXN_CREDIT
from ..validation import normalize_referral_code, require_positive_int
from .code_generator import CodeGenerator, referral_code_generator
from .concurrency import RetryableConflict, run_with_retry
from .ledger_service import REASON_CODE_REDEMPTION, REFERENCE_CODE, post_entry
from keyledger.time_utils import utcnow


@dataclass(frozen=True)
class RedemptionResult:
    code: str
    amount_credited: int
    new_balance: int
    transaction_id: int

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "amount_credited": self.amount_credited,
            "new_balance": self.new_balance,
            "transaction_id": self.transaction_id,
        }


# =============================================================================
# CREATION (admin)
# =============================================================================

def create_referral_code(
    amount: int,
    usage_limit: int = 1,
    expires_at: Optional[datetime] = None,
    *,
    created_by: str | None = None,
    generator: CodeGenerator | None = None,
) -> ReferralCode:
    """
    Create a redeemable code worth `amount`, usable `usage_limit` times.
    """
    amount = require_positive_int(amount, "amount")
    usage_limit = require_positive_int(usage_limit, "usage_limit")
    if expires_at is not None and expires_at <= utcnow():
        raise ValidationError("expires_at must be in the future")
    generator = generator or referral_code_generator()

    def _exists(code: str) -> bool:
        return db.session.query(ReferralCode.id).filter_by(code=code).first() is not None

    def _op() -> ReferralCode:
        code = generator.generate(_exists)
        referral = ReferralCode(
            code=code,
            amount=amount,
            usage_limit=usage_limit,
            uses_consumed=0,
            expires_at=expires_at,
            created_by=created_by,
        )
        db.session.add(referral)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise RetryableConflict(str(exc)) from exc
        return referral

    referral = run_with_retry(_op)
    current_app.logger.info(
        "Created referral code %s (amount %d, usage limit %d)", referral.code, amount, usage_limit
    )
    return referral


# =============================================================================
# REDEMPTION
# =============================================================================

def _check_redeemable(referral: ReferralCode, current: datetime) -> None:
    if referral.expires_at is not None and referral.expires_at <= current:
        raise CodeExpired("Referral code has expired")
    if referral.uses_consumed >= referral.usage_limit:
        raise CodeExhausted("Referral code has been fully redeemed")


def redeem_code(
    account_id: int,
    code: str,
    *,
    once_per_account: bool | None = None,
    deadline: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> RedemptionResult:
    """
    Redeem a referral code into the account's balance.

    Raises:
        ValidationError (malformed code), InvalidCode, CodeExpired,
        CodeExhausted, CodeAlreadyRedeemed, AccountNotFound,
        Conflict, DeadlineExceeded, StorageFault
    """
    normalized = normalize_referral_code(code)
    if once_per_account is None:
        once_per_account = current_app.config.get("REDEEM_ONCE_PER_ACCOUNT", True)

    def _op() -> RedemptionResult:
        current = now or utcnow()

        referral = (
            db.session.query(ReferralCode)
            .filter_by(code=normalized)
            .populate_existing()
            .first()
        )
        if not referral:
            raise InvalidCode("Invalid referral code")
        _check_redeemable(referral, current)

        if once_per_account:
            already = db.session.query(ReferralRedemption.id).filter_by(
                code_id=referral.id,
                account_id=account_id,
            ).first()
            if already:
                raise CodeAlreadyRedeemed("You have already redeemed this code")

        consumed = db.session.execute(
            update(ReferralCode)
            .where(
                ReferralCode.id == referral.id,
                ReferralCode.uses_consumed < ReferralCode.usage_limit,
                db.or_(ReferralCode.expires_at.is_(None), ReferralCode.expires_at > current),
            )
            .values(uses_consumed=ReferralCode.uses_consumed + 1)
            .execution_options(synchronize_session=False)
        )
        if not consumed.rowcount:
            db.session.refresh(referral)
            _check_redeemable(referral, current)
            raise CodeExhausted("Referral code has been fully redeemed")

        txn = post_entry(
            account_id=account_id,
            txn_type=TXN_CREDIT,
            amount=referral.amount,
            reason=REASON_CODE_REDEMPTION,
            reference_type=REFERENCE_CODE,
            reference_id=referral.code,
            description=f"Redeemed referral code {referral.code}",
            now=current,
        )

        db.session.add(ReferralRedemption(
            code_id=referral.id,
            account_id=account_id,
            unique_account_id=account_id if once_per_account else None,
            transaction_id=txn.id,
            redeemed_at=current,
        ))
        try:
            db.session.flush()
        except IntegrityError as exc:
            # Concurrent redemption by the same account; retry reports it
            raise RetryableConflict(str(exc)) from exc

        return RedemptionResult(
            code=referral.code,
            amount_credited=txn.amount,
            new_balance=txn.balance_after,
            transaction_id=txn.id,
        )

    result = run_with_retry(_op, deadline=deadline)
    current_app.logger.info(
        "Account %s redeemed code %s for %d (balance %d)",
        account_id, result.code, result.amount_credited, result.new_balance,
    )
    return result


# =============================================================================
# QUERIES
# =============================================================================

def get_referral_code(code: str) -> ReferralCode:
    normalized = normalize_referral_code(code)
    referral = db.session.query(ReferralCode).filter_by(code=normalized).first()
    if not referral:
        raise InvalidCode("Invalid referral code")
    return referral


def list_active_codes(
    *,
    min_amount: int | None = None,
    expires_after: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> list[ReferralCode]:
    """Codes with uses remaining and not expired, newest first."""
    current = now or utcnow()
    q = db.session.query(ReferralCode).filter(
        ReferralCode.uses_consumed < ReferralCode.usage_limit,
        db.or_(ReferralCode.expires_at.is_(None), ReferralCode.expires_at > current),
    )
    if min_amount is not None:
        q = q.filter(ReferralCode.amount >= min_amount)
    if expires_after is not None:
        q = q.filter(ReferralCode.expires_at > expires_after)
    return q.order_by(ReferralCode.created_at.desc(), ReferralCode.id.desc()).all()
