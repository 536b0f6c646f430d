# backend/keyledger/routes/system.py
"""
Liveness endpoint for deployments.

/health runs a trivial statement plus a row count per ledger table and
answers 503 when the database cannot be reached.
"""

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select, text

from ..extensions import db
from ..models import Account, Key, LedgerTransaction, ReferralCode

system_bp = Blueprint("system", __name__)

_COUNTED = {
    "accounts": Account,
    "keys": Key,
    "transactions": LedgerTransaction,
    "referral_codes": ReferralCode,
}


def check_database_health() -> dict:
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
        counts = {
            name: db.session.scalar(select(func.count()).select_from(model))
            for name, model in _COUNTED.items()
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "error": "Database error",
        }
    return {
        "status": "healthy",
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "details": counts,
    }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "checks": {
            "database": database,
            "pricing_tiers": len(current_app.extensions["pricing_catalog"]),
        },
    }), 200 if healthy else 503
