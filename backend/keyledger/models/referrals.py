from __future__ import annotations

from ..extensions import db
from keyledger.time_utils import to_utc_z


class ReferralCode(db.Model):
    """
    Redeemable code that credits an account's balance.

    INVARIANT: 0 <= uses_consumed <= usage_limit. uses_consumed is only
    incremented by a conditional UPDATE guarded by usage_limit.
    """
    __tablename__ = "referral_codes"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_referral_codes_code"),
        db.CheckConstraint("amount > 0", name="ck_referral_codes_amount_positive"),
        db.CheckConstraint("usage_limit >= 1", name="ck_referral_codes_usage_limit"),
        db.CheckConstraint(
            "uses_consumed >= 0 AND uses_consumed <= usage_limit",
            name="ck_referral_codes_uses_bounded",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), nullable=False)

    amount = db.Column(db.Integer, nullable=False)
    usage_limit = db.Column(db.Integer, nullable=False, default=1)
    uses_consumed = db.Column(db.Integer, nullable=False, default=0)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def uses_remaining(self) -> int:
        return self.usage_limit - self.uses_consumed

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "amount": self.amount,
            "usage_limit": self.usage_limit,
            "uses_consumed": self.uses_consumed,
            "uses_remaining": self.uses_remaining,
            "expires_at": to_utc_z(self.expires_at),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }


class ReferralRedemption(db.Model):
    """
    One row per successful redemption.

    unique_account_id is set to account_id when the once-per-account policy
    is in force and left NULL otherwise. NULLs never collide in the unique
    constraint, so the database itself rejects a second redemption of the
    same code by the same account only when the policy applies.
    """
    __tablename__ = "referral_redemptions"
    __table_args__ = (
        db.UniqueConstraint("code_id", "unique_account_id", name="uq_referral_redemptions_once_per_account"),
        db.Index("ix_referral_redemptions_code_account", "code_id", "account_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code_id = db.Column(db.Integer, db.ForeignKey("referral_codes.id"), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)
    unique_account_id = db.Column(db.Integer, nullable=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=False, unique=True)

    redeemed_at = db.Column(db.DateTime(timezone=True), nullable=False)

    referral_code = db.relationship("ReferralCode", backref=db.backref("redemptions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code_id": self.code_id,
            "account_id": self.account_id,
            "transaction_id": self.transaction_id,
            "redeemed_at": to_utc_z(self.redeemed_at),
        }
