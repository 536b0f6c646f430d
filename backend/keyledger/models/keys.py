from __future__ import annotations

from ..extensions import db
from keyledger.time_utils import to_utc_z, utcnow


class Key(db.Model):
    """
    Time-boxed, device-bound access key sold against account balance.

    LIFECYCLE:
    - Active: is_active and now < expires_at
    - Expired: now >= expires_at (persisted as is_active=False once observed)
    - Revoked: is_active=False set by deactivation
    Expired and Revoked are terminal; nothing sets is_active back to True.

    IMMUTABLE AFTER ISSUANCE: code, account_id, tier_id, price, device_limit,
    issued_at, expires_at. price is the catalog price at issuance time.

    CONCURRENCY: bound_device_count mirrors len(devices) and is only
    incremented by a conditional UPDATE guarded by device_limit, so the
    device cap holds under concurrent validation.
    """
    __tablename__ = "keys"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_keys_code"),
        db.CheckConstraint("device_limit >= 1 AND device_limit <= 10", name="ck_keys_device_limit_range"),
        db.CheckConstraint("bound_device_count <= device_limit", name="ck_keys_device_cap"),
        db.CheckConstraint("price > 0", name="ck_keys_price_positive"),
        db.Index("ix_keys_account_active", "account_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)
    account_id = db.Column(db.Integer, db.ForeignKey("accounts.id"), nullable=False, index=True)

    tier_id = db.Column(db.String(32), nullable=False)
    price = db.Column(db.Integer, nullable=False)
    device_limit = db.Column(db.Integer, nullable=False, default=1)
    bound_device_count = db.Column(db.Integer, nullable=False, default=0)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deactivation_reason = db.Column(db.String(16), nullable=True)  # EXPIRED, REVOKED

    # Debit that paid for this key
    transaction_id = db.Column(db.Integer, db.ForeignKey("ledger_transactions.id"), nullable=False, unique=True)

    account = db.relationship("Account", backref=db.backref("keys", lazy="dynamic"))
    transaction = db.relationship("LedgerTransaction")
    devices = db.relationship(
        "KeyDevice",
        backref="key",
        lazy=True,
        order_by="KeyDevice.id",
    )

    def is_expired(self, now=None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def status(self, now=None) -> str:
        if self.is_expired(now) or self.deactivation_reason == "EXPIRED":
            return "EXPIRED"
        if not self.is_active:
            return "REVOKED"
        return "ACTIVE"

    def to_dict(self, include_devices: bool = False) -> dict:
        data = {
            "id": self.id,
            "key_code": self.code,
            "account_id": self.account_id,
            "tier_id": self.tier_id,
            "price": self.price,
            "device_limit": self.device_limit,
            "bound_devices": self.bound_device_count,
            "issued_at": to_utc_z(self.issued_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_active": self.is_active,
            "status": self.status(),
            "deactivated_at": to_utc_z(self.deactivated_at),
            "transaction_id": self.transaction_id,
        }
        if include_devices:
            data["devices"] = [d.to_dict() for d in self.devices]
        return data


class KeyDevice(db.Model):
    """
    A device bound to a key. At most one row per (key, device).

    first_bound_at never changes; last_seen_at is touched on every
    successful validation from the device.
    """
    __tablename__ = "key_devices"
    __table_args__ = (
        db.UniqueConstraint("key_id", "device_id", name="uq_key_devices_key_device"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key_id = db.Column(db.Integer, db.ForeignKey("keys.id"), nullable=False, index=True)
    device_id = db.Column(db.String(128), nullable=False)

    first_bound_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_seen_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "first_bound_at": to_utc_z(self.first_bound_at),
            "last_seen_at": to_utc_z(self.last_seen_at),
        }
