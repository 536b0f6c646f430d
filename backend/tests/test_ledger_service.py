"""
Account ledger tests.

Covers the balance invariant, atomic debit/credit, admin adjustments,
history filtering and the atomic unit runner.
"""

import sqlite3
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from keyledger.errors import (
    AccountNotFound,
    Conflict,
    DeadlineExceeded,
    InsufficientBalance,
    StorageFault,
    ValidationError,
)
from keyledger.extensions import db
from keyledger.models import LedgerTransaction, TXN_CREDIT, TXN_DEBIT
from keyledger.services import ledger_service
from keyledger.services.concurrency import RetryableConflict, run_with_retry
from keyledger.time_utils import utcnow


def _rows(account_id):
    return (
        db.session.query(LedgerTransaction)
        .filter_by(account_id=account_id)
        .order_by(LedgerTransaction.id)
        .all()
    )


class TestAccounts:
    def test_create_account_posts_opening_credit(self, db_session):
        account = ledger_service.create_account("alice", 100)

        assert account.balance == 100
        rows = _rows(account.id)
        assert len(rows) == 1
        assert rows[0].type == TXN_CREDIT
        assert rows[0].amount == 100
        assert rows[0].balance_before == 0
        assert rows[0].balance_after == 100
        assert rows[0].reason == ledger_service.REASON_ADMIN_ADJUSTMENT

    def test_zero_opening_balance_writes_no_transaction(self, db_session):
        account = ledger_service.create_account("bob")

        assert account.balance == 0
        assert _rows(account.id) == []

    def test_duplicate_username_rejected(self, db_session):
        ledger_service.create_account("alice")
        with pytest.raises(ValidationError):
            ledger_service.create_account("alice")

    def test_negative_opening_balance_rejected(self, db_session):
        with pytest.raises(ValidationError):
            ledger_service.create_account("carol", -5)

    def test_unknown_account(self, db_session):
        with pytest.raises(AccountNotFound):
            ledger_service.get_account(999)


class TestDebitCredit:
    def test_debit_records_one_transaction(self, make_account):
        account = make_account(balance=100)

        txn = ledger_service.debit(account.id, 50, "TEST", "ref-1")

        assert txn.type == TXN_DEBIT
        assert txn.amount == 50
        assert txn.balance_before == 100
        assert txn.balance_after == 50
        assert txn.reference_id == "ref-1"
        assert ledger_service.get_balance(account.id) == 50

    def test_credit_increases_balance(self, make_account):
        account = make_account(balance=10)

        txn = ledger_service.credit(account.id, 15, "TEST")

        assert txn.balance_after == 25
        assert ledger_service.get_balance(account.id) == 25

    def test_insufficient_balance_leaves_state_untouched(self, make_account):
        account = make_account(balance=5)
        before = len(_rows(account.id))

        with pytest.raises(InsufficientBalance):
            ledger_service.debit(account.id, 10, "TEST")

        assert ledger_service.get_balance(account.id) == 5
        assert len(_rows(account.id)) == before

    @pytest.mark.parametrize("amount", [0, -1, 1.5, "10.0", "1e3", True, None])
    def test_amount_must_be_positive_integer(self, make_account, amount):
        account = make_account(balance=100)
        with pytest.raises(ValidationError):
            ledger_service.debit(account.id, amount, "TEST")
        assert ledger_service.get_balance(account.id) == 100

    def test_missing_account(self, db_session):
        with pytest.raises(AccountNotFound):
            ledger_service.credit(12345, 10, "TEST")

    def test_balance_matches_ledger_after_mixed_sequence(self, make_account):
        account = make_account(balance=30)
        operations = [("debit", 10), ("credit", 5), ("debit", 40), ("debit", 25), ("credit", 100), ("debit", 1)]

        for op, amount in operations:
            try:
                getattr(ledger_service, op)(account.id, amount, "TEST")
            except InsufficientBalance:
                pass
            balance = ledger_service.get_balance(account.id)
            assert balance >= 0
            assert balance == ledger_service.reconcile_balance(account.id)

        assert ledger_service.get_balance(account.id) == 30 - 10 + 5 - 25 + 100 - 1

    def test_deadline_in_the_past_aborts_without_writes(self, make_account):
        account = make_account(balance=100)
        before = len(_rows(account.id))

        with pytest.raises(DeadlineExceeded):
            ledger_service.debit(account.id, 10, "TEST", deadline=utcnow() - timedelta(seconds=1))

        assert ledger_service.get_balance(account.id) == 100
        assert len(_rows(account.id)) == before


class TestAdjustBalance:
    def test_positive_adjustment_credits(self, make_account):
        account = make_account(balance=10)

        txn = ledger_service.adjust_balance(account.id, 40, "Goodwill")

        assert txn.type == TXN_CREDIT
        assert txn.description == "Goodwill"
        assert txn.reason == ledger_service.REASON_ADMIN_ADJUSTMENT
        assert ledger_service.get_balance(account.id) == 50

    def test_negative_adjustment_debits(self, make_account):
        account = make_account(balance=10)

        txn = ledger_service.adjust_balance(account.id, -4)

        assert txn.type == TXN_DEBIT
        assert txn.amount == 4
        assert ledger_service.get_balance(account.id) == 6

    def test_adjustment_cannot_overdraw(self, make_account):
        account = make_account(balance=10)
        with pytest.raises(InsufficientBalance):
            ledger_service.adjust_balance(account.id, -11)
        assert ledger_service.get_balance(account.id) == 10

    def test_zero_adjustment_rejected(self, make_account):
        account = make_account(balance=10)
        with pytest.raises(ValidationError):
            ledger_service.adjust_balance(account.id, 0)


class TestHistory:
    def test_newest_first_with_type_filter(self, make_account):
        account = make_account(balance=100)
        ledger_service.debit(account.id, 10, "TEST")
        ledger_service.debit(account.id, 20, "TEST")
        ledger_service.credit(account.id, 5, "TEST")

        rows = ledger_service.get_transaction_history(account.id)
        assert [r.amount for r in rows] == [5, 20, 10, 100]

        debits = ledger_service.get_transaction_history(account.id, txn_type=TXN_DEBIT)
        assert [r.amount for r in debits] == [20, 10]

    def test_limit_is_clamped(self, make_account):
        account = make_account(balance=100)
        for _ in range(3):
            ledger_service.debit(account.id, 1, "TEST")

        assert len(ledger_service.get_transaction_history(account.id, limit=2)) == 2
        assert len(ledger_service.get_transaction_history(account.id, limit=0)) == 1

    def test_date_range_is_inclusive(self, make_account):
        account = make_account(balance=100)
        txn = ledger_service.debit(account.id, 10, "TEST")

        rows = ledger_service.get_transaction_history(
            account.id, start=txn.created_at, end=txn.created_at
        )
        assert [r.id for r in rows] == [txn.id]

    def test_invalid_type_filter(self, make_account):
        account = make_account()
        with pytest.raises(ValidationError):
            ledger_service.get_transaction_history(account.id, txn_type="REFUND")


class TestAppendOnly:
    def test_transactions_cannot_be_updated(self, make_account):
        account = make_account(balance=100)
        txn = _rows(account.id)[0]

        txn.description = "tampered"
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()

        assert _rows(account.id)[0].description == "Opening balance"

    def test_transactions_cannot_be_deleted(self, make_account):
        account = make_account(balance=100)
        txn = _rows(account.id)[0]

        db.session.delete(txn)
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()

        assert len(_rows(account.id)) == 1


class TestAtomicUnit:
    def test_failure_rolls_back_every_write(self, make_account):
        account = make_account(balance=100)

        def _op():
            ledger_service.post_entry(
                account_id=account.id, txn_type=TXN_DEBIT, amount=30, reason="TEST",
            )
            raise ValidationError("abort after posting")

        with pytest.raises(ValidationError):
            run_with_retry(_op)

        assert ledger_service.get_balance(account.id) == 100
        assert len(_rows(account.id)) == 1

    def test_retryable_conflict_exhausts_into_conflict(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise RetryableConflict("lost the race")

        with pytest.raises(Conflict):
            run_with_retry(_op, attempts=3, backoff_base=0)

        assert len(calls) == 3

    def test_retry_succeeds_after_transient_conflict(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            if len(calls) < 2:
                raise RetryableConflict("transient")
            return "done"

        assert run_with_retry(_op, attempts=3, backoff_base=0) == "done"
        assert len(calls) == 2

    def test_storage_errors_are_wrapped(self, db_session):
        def _op():
            raise SQLAlchemyError("disk on fire")

        with pytest.raises(StorageFault) as exc_info:
            run_with_retry(_op)

        assert "disk on fire" not in exc_info.value.message

    def test_lock_timeouts_are_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise OperationalError("UPDATE accounts", {}, sqlite3.OperationalError("database is locked"))

        with pytest.raises(Conflict):
            run_with_retry(_op, attempts=3, backoff_base=0)

        assert len(calls) == 3

    def test_fatal_operational_errors_are_not_retried(self, db_session):
        calls = []

        def _op():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, sqlite3.OperationalError("disk I/O error"))

        with pytest.raises(StorageFault):
            run_with_retry(_op, attempts=3, backoff_base=0)

        assert len(calls) == 1

    def test_missing_ledger_table_is_storage_fault(self, make_account):
        account = make_account(balance=100)
        db.session.execute(text("ALTER TABLE ledger_transactions RENAME TO ledger_transactions_offline"))
        db.session.commit()
        try:
            with pytest.raises(StorageFault):
                ledger_service.debit(account.id, 10, "TEST")
        finally:
            db.session.execute(text("ALTER TABLE ledger_transactions_offline RENAME TO ledger_transactions"))
            db.session.commit()

        assert ledger_service.get_balance(account.id) == 100
        assert len(_rows(account.id)) == 1
