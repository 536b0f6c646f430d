from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from keyledger.time_utils import to_utc_z


TXN_DEBIT = "DEBIT"
TXN_CREDIT = "CREDIT"


class Account(db.Model):
    """
    Prepaid account that pays for keys.

    WHY: balance is denormalized for fast checks, but it is only ever
    mutated together with a LedgerTransaction row in the same DB
    transaction, so balance == sum(credits) - sum(debits) always holds.

    CONCURRENCY: version_id enables optimistic locking; concurrent debits
    that race on the same row raise StaleDataError and are retried.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        db.CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True)

    balance = db.Column(db.Integer, nullable=False, default=0)  # minor currency units

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "balance": self.balance,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class LedgerTransaction(db.Model):
    """
    Append-only ledger of balance-affecting events.

    TRANSACTION TYPES:
    - DEBIT: balance_after = balance_before - amount
    - CREDIT: balance_after = balance_before + amount

    REASONS: KEY_PURCHASE, CODE_REDEMPTION, ADMIN_ADJUSTMENT

    IMMUTABLE: Records are never updated or deleted. The ORM refuses both.
    """
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_ledger_txn_amount_positive"),
        db.CheckConstraint(
            "(type = 'DEBIT' AND balance_after = balance_before - amount) OR "
            "(type = 'CREDIT' AND balance_after = balance_before + amount)",
            name="ck_ledger_txn_balance_arithmetic",
        ),
        db.Index("ix_ledger_txn_account_created", "account_id", "created_at"),
        db.Index("ix_ledger_txn_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)

    type = db.Column(db.String(8), nullable=False, index=True)  # DEBIT, CREDIT
    amount = db.Column(db.Integer, nullable=False)
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(32), nullable=False, index=True)
    # Generic pointer to the Key or ReferralCode that caused the entry
    reference_type = db.Column(db.String(16), nullable=True)  # KEY, CODE
    reference_id = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    account = db.relationship("Account", backref=db.backref("transactions", lazy="dynamic"))

    @property
    def signed_amount(self) -> int:
        return self.amount if self.type == TXN_CREDIT else -self.amount

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "type": self.type,
            "amount": self.amount,
            "signed_amount": self.signed_amount,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(LedgerTransaction, "before_update")
@event.listens_for(LedgerTransaction, "before_delete")
def _refuse_ledger_mutation(mapper, connection, target):
    raise RuntimeError("ledger_transactions rows are append-only")
