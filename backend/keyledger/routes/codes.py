# Overview: Flask API routes for referral codes; redemption and admin management.

from flask import Blueprint, jsonify, request

from ..decorators import request_deadline, require_admin
from ..errors import ValidationError
from ..models import ReferralRedemption
from ..services import referral_service
from ..time_utils import parse_iso_datetime
from ..validation import coerce_int


codes_bp = Blueprint("codes", __name__, url_prefix="/api/codes")


@codes_bp.post("/redeem")
def redeem_code_route():
    """
    Redeem a referral code into an account balance.

    Request body:
    {
        "account_id": 1,
        "code": "AB12CD34EF"
    }

    Returns:
        200: {amount_credited, new_balance, ...}
        400: Malformed code
        404: Unknown code / account
        409: Code exhausted or already redeemed by this account
        410: Code expired
    """
    data = request.get_json(silent=True) or {}
    account_id = coerce_int(data.get("account_id"), "account_id")

    result = referral_service.redeem_code(
        account_id,
        data.get("code"),
        deadline=request_deadline(),
    )
    return jsonify(result.to_dict()), 200


@codes_bp.post("")
@require_admin
def create_code_route():
    """
    Create a referral code (admin).

    Request body:
    {
        "amount": 100,
        "usage_limit": 5,                       (optional, default 1)
        "expires_at": "2026-12-31T00:00:00Z",   (optional)
        "created_by": "ops"                     (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        expires_at = parse_iso_datetime(data.get("expires_at"))
    except ValueError:
        raise ValidationError("expires_at must be an ISO-8601 datetime")

    referral = referral_service.create_referral_code(
        data.get("amount"),
        data.get("usage_limit", 1),
        expires_at,
        created_by=data.get("created_by"),
    )
    return jsonify({
        "message": "Referral code generated successfully",
        "referral_code": referral.to_dict(),
    }), 201


@codes_bp.get("")
@require_admin
def list_codes_route():
    """Active referral codes (admin). Query: min_amount, expires_after."""
    raw_min = request.args.get("min_amount")
    min_amount = coerce_int(raw_min, "min_amount") if raw_min else None

    try:
        expires_after = parse_iso_datetime(request.args.get("expires_after"))
    except ValueError:
        raise ValidationError("expires_after must be an ISO-8601 datetime")

    codes = referral_service.list_active_codes(min_amount=min_amount, expires_after=expires_after)
    return jsonify({"referral_codes": [c.to_dict() for c in codes]}), 200


@codes_bp.get("/<string:code>")
@require_admin
def get_code_route(code: str):
    """Referral code with its redemptions (admin)."""
    referral = referral_service.get_referral_code(code)
    redemptions = referral.redemptions.order_by(ReferralRedemption.id).all()
    return jsonify({
        "referral_code": referral.to_dict(),
        "redemptions": [r.to_dict() for r in redemptions],
    }), 200
