# Overview: Flask API routes for keys; issue, validate, pricing, lookup and deactivation.

"""
Key API Routes

CONTRACTS:
- IssueKey    POST /api/keys           {account_id, tier_id, device_limit}
                                       -> {key_code, price, device_limit, expires_at, ...}
- ValidateKey POST /api/keys/validate  {key_code, device_id} -> {expires_at, tier_id}
- GetPricing  GET  /api/keys/pricing   -> {pricing: [{tier_id, price, duration_millis}]}

Errors are answered as {"error": {"kind", "message"}} with the status
mapped from the error kind (see keyledger.errors).
"""

from flask import Blueprint, current_app, jsonify, request

from ..decorators import is_admin_request, request_deadline
from ..services import key_service, key_validation_service
from ..time_utils import to_epoch_millis, to_utc_z
from ..validation import coerce_int


keys_bp = Blueprint("keys", __name__, url_prefix="/api/keys")


def _catalog():
    return current_app.extensions["pricing_catalog"]


@keys_bp.post("")
def issue_key_route():
    """
    Issue a key paid from the account balance.

    Request body:
    {
        "account_id": 1,
        "tier_id": "1day",
        "device_limit": 2   (optional, default DEFAULT_DEVICE_LIMIT)
    }

    Returns:
        201: Key issued
        400: Invalid tier / device limit
        402: Insufficient balance
        404: Account not found
    """
    data = request.get_json(silent=True) or {}
    account_id = coerce_int(data.get("account_id"), "account_id")
    device_limit = data.get("device_limit", current_app.config.get("DEFAULT_DEVICE_LIMIT", 1))

    key = key_service.issue_key(
        account_id,
        data.get("tier_id"),
        device_limit,
        catalog=_catalog(),
        deadline=request_deadline(),
    )

    return jsonify({
        "key_code": key.code,
        "tier_id": key.tier_id,
        "price": key.price,
        "device_limit": key.device_limit,
        "issued_at": to_utc_z(key.issued_at),
        "expires_at": to_utc_z(key.expires_at),
        "expires_at_millis": to_epoch_millis(key.expires_at),
        "new_balance": key.transaction.balance_after,
    }), 201


@keys_bp.post("/validate")
def validate_key_route():
    """
    Validate a key for a device (public; called by client apps).

    Request body:
    {
        "key_code": "9F3A...",
        "device_id": "device-abc"
    }

    Returns:
        200: {valid: true, expires_at, tier_id}
        400/401/409/410: {valid: false, error: {kind, message}}
    """
    data = request.get_json(silent=True) or {}

    result = key_validation_service.validate_key(
        data.get("key_code"),
        data.get("device_id"),
        deadline=request_deadline(),
    )

    if not result.ok:
        err = result.to_error()
        return jsonify({"valid": False, "error": err.to_dict()}), err.http_status

    return jsonify({
        "valid": True,
        "expires_at": to_utc_z(result.expires_at),
        "expires_at_millis": to_epoch_millis(result.expires_at),
        "tier_id": result.tier_id,
        "newly_bound": result.newly_bound,
    }), 200


@keys_bp.get("/pricing")
def get_pricing_route():
    return jsonify({"pricing": _catalog().to_list()}), 200


@keys_bp.get("")
def list_keys_route():
    """
    List keys for an account.

    Query params: account_id (required), status (active | expired)
    """
    account_id = coerce_int(request.args.get("account_id"), "account_id")
    status = request.args.get("status") or None

    keys = key_service.list_account_keys(account_id, status=status)
    return jsonify({"keys": [k.to_dict() for k in keys]}), 200


@keys_bp.get("/<string:key_code>")
def get_key_route(key_code: str):
    """Key details with bound devices. Owner (account_id param) or admin only."""
    raw_account = request.args.get("account_id")
    account_id = coerce_int(raw_account, "account_id") if raw_account else None

    key = key_service.get_key(key_code, account_id=account_id, is_admin=is_admin_request())
    return jsonify({"key": key.to_dict(include_devices=True)}), 200


@keys_bp.post("/<string:key_code>/deactivate")
def deactivate_key_route(key_code: str):
    """
    Revoke a key. Owner or admin only.

    Request body: {"account_id": 1}  (not needed with X-Admin-Key)
    """
    data = request.get_json(silent=True) or {}
    raw_account = data.get("account_id")
    account_id = coerce_int(raw_account, "account_id") if raw_account is not None else None

    key = key_service.deactivate_key(
        key_code,
        account_id=account_id,
        is_admin=is_admin_request(),
        deadline=request_deadline(),
    )
    return jsonify({
        "message": "Key deactivated successfully",
        "key": key.to_dict(),
    }), 200
