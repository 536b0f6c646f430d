# Overview: Flask API routes for accounts; balance, transaction history and admin adjustments.

from flask import Blueprint, jsonify, request

from ..decorators import request_deadline, require_admin
from ..errors import ValidationError
from ..services import ledger_service
from ..time_utils import parse_iso_datetime

"""
Time semantics:
- API accepts ISO-8601 datetimes with Z/offsets; backend normalizes to UTC-naive internally.
- start/end filtering is inclusive.
"""

accounts_bp = Blueprint("accounts", __name__, url_prefix="/api/accounts")


@accounts_bp.get("/<int:account_id>")
def get_account_route(account_id: int):
    account = ledger_service.get_account(account_id)
    return jsonify({"account": account.to_dict()}), 200


@accounts_bp.get("/<int:account_id>/transactions")
def list_transactions_route(account_id: int):
    """
    Transaction history, newest first.

    Query params: type (DEBIT | CREDIT), start_date, end_date, limit (1..500)
    """
    try:
        start_dt = parse_iso_datetime(request.args.get("start_date"))
        end_dt = parse_iso_datetime(request.args.get("end_date"))
    except ValueError:
        raise ValidationError("start_date and end_date must be ISO-8601 datetimes")

    limit = request.args.get("limit", default=50, type=int)

    rows = ledger_service.get_transaction_history(
        account_id,
        txn_type=request.args.get("type") or None,
        start=start_dt,
        end=end_dt,
        limit=limit,
    )
    return jsonify({
        "items": [r.to_dict() for r in rows],
        "balance": ledger_service.get_balance(account_id),
        "limit": max(1, min(limit, ledger_service.MAX_HISTORY_LIMIT)),
    }), 200


@accounts_bp.post("")
@require_admin
def create_account_route():
    """
    Create an account (admin).

    Request body: {"username": "rebrander1", "initial_balance": 100}
    """
    data = request.get_json(silent=True) or {}
    account = ledger_service.create_account(
        data.get("username"),
        data.get("initial_balance", 0),
    )
    return jsonify({"account": account.to_dict()}), 201


@accounts_bp.post("/<int:account_id>/adjust")
@require_admin
def adjust_balance_route(account_id: int):
    """
    Admin balance adjustment. Positive amount credits, negative debits.

    Request body: {"amount": -50, "note": "Refund reversal"}
    """
    data = request.get_json(silent=True) or {}
    txn = ledger_service.adjust_balance(
        account_id,
        data.get("amount"),
        data.get("note"),
        deadline=request_deadline(),
    )
    return jsonify({
        "transaction": txn.to_dict(),
        "new_balance": txn.balance_after,
    }), 201
