# Overview: Service-layer operations for the account ledger; atomic balance changes with transaction logging.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func

from ..errors import AccountNotFound, InsufficientBalance, ValidationError
from ..extensions import db
from ..models import Account, LedgerTransaction, TXN_CREDIT, TXN_DEBIT
from ..validation import coerce_int, require_positive_int
from .concurrency import lock_for_update, run_with_retry
from keyledger.time_utils import utcnow

"""
Account Ledger Invariants (authoritative)

- balance == sum(CREDIT.amount) - sum(DEBIT.amount) over the account's rows.
- balance >= 0 at every observable point.
- Exactly one balance mutation and one LedgerTransaction row are written
  together, inside the caller's atomic unit; neither is visible alone.
- A refused debit (InsufficientBalance) writes nothing.
- ledger_transactions rows are never updated or deleted.
"""


REASON_KEY_PURCHASE = "KEY_PURCHASE"
REASON_CODE_REDEMPTION = "CODE_REDEMPTION"
REASON_ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"

REFERENCE_KEY = "KEY"
REFERENCE_CODE = "CODE"

MAX_HISTORY_LIMIT = 500


# =============================================================================
# ENTRY POSTING (runs inside an open unit of work)
# =============================================================================

def post_entry(
    *,
    account_id: int,
    txn_type: str,
    amount: int,
    reason: str,
    reference_type: str | None = None,
    reference_id: str | None = None,
    description: str | None = None,
    now: Optional[datetime] = None,
) -> LedgerTransaction:
    """
    Apply one balance change and append its LedgerTransaction.

    Does not commit: callers run this inside run_with_retry so the entry
    lands together with whatever else the unit writes (key, redemption).

    Raises:
        AccountNotFound, InsufficientBalance
    """
    if txn_type not in (TXN_DEBIT, TXN_CREDIT):
        raise ValidationError(f"Invalid transaction type: {txn_type}")

    account = (
        lock_for_update(db.session.query(Account).filter_by(id=account_id))
        .populate_existing()
        .first()
    )
    if not account:
        raise AccountNotFound(f"Account {account_id} not found")

    balance_before = account.balance
    if txn_type == TXN_DEBIT:
        if balance_before < amount:
            raise InsufficientBalance(
                f"Insufficient balance. Required: {amount}, available: {balance_before}"
            )
        balance_after = balance_before - amount
    else:
        balance_after = balance_before + amount

    # version_id_col turns a concurrent change into StaleDataError at flush
    account.balance = balance_after

    txn = LedgerTransaction(
        account_id=account.id,
        type=txn_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        description=description,
        created_at=now or utcnow(),
    )
    db.session.add(txn)
    db.session.flush()
    return txn


# =============================================================================
# PUBLIC ATOMIC OPERATIONS
# =============================================================================

def debit(
    account_id: int,
    amount: int,
    reason: str,
    reference_id: str | None = None,
    *,
    reference_type: str | None = None,
    description: str | None = None,
    deadline: Optional[datetime] = None,
) -> LedgerTransaction:
    """Debit an account as its own atomic unit."""
    amount = require_positive_int(amount, "amount")

    def _op():
        return post_entry(
            account_id=account_id,
            txn_type=TXN_DEBIT,
            amount=amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )

    return run_with_retry(_op, deadline=deadline)


def credit(
    account_id: int,
    amount: int,
    reason: str,
    reference_id: str | None = None,
    *,
    reference_type: str | None = None,
    description: str | None = None,
    deadline: Optional[datetime] = None,
) -> LedgerTransaction:
    """Credit an account as its own atomic unit."""
    amount = require_positive_int(amount, "amount")

    def _op():
        return post_entry(
            account_id=account_id,
            txn_type=TXN_CREDIT,
            amount=amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )

    return run_with_retry(_op, deadline=deadline)


def adjust_balance(
    account_id: int,
    amount: int,
    note: str | None = None,
    *,
    deadline: Optional[datetime] = None,
) -> LedgerTransaction:
    """
    Admin balance adjustment.

    Positive amount credits, negative amount debits. Zero is rejected.
    """
    amount = coerce_int(amount, "amount")
    if amount == 0:
        raise ValidationError("amount must be non-zero")

    description = note or "Balance adjusted by admin"
    if amount > 0:
        txn = credit(account_id, amount, REASON_ADMIN_ADJUSTMENT, description=description, deadline=deadline)
    else:
        txn = debit(account_id, -amount, REASON_ADMIN_ADJUSTMENT, description=description, deadline=deadline)

    current_app.logger.info(
        "Admin adjustment on account %s: %+d (balance %d -> %d)",
        account_id, amount, txn.balance_before, txn.balance_after,
    )
    return txn


def create_account(username: str, initial_balance: int = 0) -> Account:
    """
    Create an account. An opening balance is posted as a CREDIT so the
    ledger sum matches the balance from the first row.
    """
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("username is required")
    username = username.strip()
    initial_balance = coerce_int(initial_balance, "initial_balance")
    if initial_balance < 0:
        raise ValidationError("initial_balance must not be negative")

    def _op():
        existing = db.session.query(Account).filter_by(username=username).first()
        if existing:
            raise ValidationError(f"Username '{username}' already exists")

        account = Account(username=username, balance=0)
        db.session.add(account)
        db.session.flush()

        if initial_balance > 0:
            post_entry(
                account_id=account.id,
                txn_type=TXN_CREDIT,
                amount=initial_balance,
                reason=REASON_ADMIN_ADJUSTMENT,
                description="Opening balance",
            )
        return account

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def get_account(account_id: int) -> Account:
    account = db.session.get(Account, account_id)
    if not account:
        raise AccountNotFound(f"Account {account_id} not found")
    return account


def get_balance(account_id: int) -> int:
    return get_account(account_id).balance


def get_transaction_history(
    account_id: int,
    *,
    txn_type: str | None = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 50,
) -> list[LedgerTransaction]:
    """
    Ledger rows for an account, newest first.

    start/end are inclusive bounds on created_at.
    """
    get_account(account_id)
    if txn_type is not None and txn_type not in (TXN_DEBIT, TXN_CREDIT):
        raise ValidationError(f"type must be one of {[TXN_DEBIT, TXN_CREDIT]}")
    limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))

    q = db.session.query(LedgerTransaction).filter(LedgerTransaction.account_id == account_id)
    if txn_type:
        q = q.filter(LedgerTransaction.type == txn_type)
    if start is not None:
        q = q.filter(LedgerTransaction.created_at >= start)
    if end is not None:
        q = q.filter(LedgerTransaction.created_at <= end)

    return (
        q.order_by(LedgerTransaction.created_at.desc(), LedgerTransaction.id.desc())
        .limit(limit)
        .all()
    )


def reconcile_balance(account_id: int) -> int:
    """Balance recomputed from the ledger (sum of credits minus debits)."""
    credits = db.session.query(func.coalesce(func.sum(LedgerTransaction.amount), 0)).filter(
        LedgerTransaction.account_id == account_id,
        LedgerTransaction.type == TXN_CREDIT,
    ).scalar()
    debits = db.session.query(func.coalesce(func.sum(LedgerTransaction.amount), 0)).filter(
        LedgerTransaction.account_id == account_id,
        LedgerTransaction.type == TXN_DEBIT,
    ).scalar()
    return int(credits or 0) - int(debits or 0)
