# Overview: Request decorators and request-context helpers for API routes.

import hmac
import math
from datetime import datetime, timedelta
from functools import wraps

from flask import current_app, g, jsonify, request

from .time_utils import utcnow


MAX_REQUEST_TIMEOUT_SECONDS = 60.0


def _admin_key_matches() -> bool:
    supplied = request.headers.get("X-Admin-Key", "")
    expected = current_app.config.get("ADMIN_API_KEY") or ""
    if not supplied or not expected:
        return False
    # Bytes comparison; compare_digest refuses non-ASCII str
    return hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))


def require_admin(f):
    """
    Require the shared admin key in the X-Admin-Key header.

    Sets g.is_admin = True for the wrapped route.

    SECURITY: Returns 401 if the header is missing or does not match
    ADMIN_API_KEY. Comparison is constant-time.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not _admin_key_matches():
            current_app.logger.warning(
                "Rejected admin request to %s from %s", request.path, request.remote_addr
            )
            return jsonify({"error": {"kind": "UNAUTHORIZED", "message": "Admin key required"}}), 401

        g.is_admin = True
        return f(*args, **kwargs)

    return decorated_function


def is_admin_request() -> bool:
    """True when the request carries a valid admin key (without requiring one)."""
    return _admin_key_matches()


def request_deadline() -> datetime | None:
    """
    Deadline for the current request's atomic unit.

    X-Request-Timeout (seconds) overrides DEFAULT_REQUEST_TIMEOUT; both are
    capped at MAX_REQUEST_TIMEOUT_SECONDS. Unparseable or non-finite
    headers (nan, inf) are ignored.
    """
    timeout = current_app.config.get("DEFAULT_REQUEST_TIMEOUT")
    header = request.headers.get("X-Request-Timeout")
    if header:
        try:
            parsed = float(header)
        except ValueError:
            parsed = None
        if parsed is not None and math.isfinite(parsed):
            timeout = parsed
    if timeout is None or timeout <= 0:
        return None
    return utcnow() + timedelta(seconds=min(timeout, MAX_REQUEST_TIMEOUT_SECONDS))
