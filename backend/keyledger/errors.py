# Overview: Ledger error taxonomy; every kind maps to a stable code and HTTP status.

"""
Error taxonomy for the key issuance & redemption ledger.

Every failure raised by a service is a LedgerError subclass carrying:
- kind: stable machine-readable code (safe to expose to clients)
- http_status: status the route layer answers with

INVARIANT: A LedgerError is only raised after the atomic unit that produced
it has been rolled back. Raw storage errors never cross this boundary; they
are wrapped in StorageFault or Conflict first.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger failures."""
    kind = "LEDGER_ERROR"
    http_status = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls) -> str:
        return cls.kind.replace("_", " ").capitalize()

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# =============================================================================
# INPUT
# =============================================================================

class ValidationError(LedgerError):
    """400-level input problem (unknown tier, device limit out of range, malformed code)."""
    kind = "VALIDATION_ERROR"
    http_status = 400


class Forbidden(LedgerError):
    kind = "FORBIDDEN"
    http_status = 403


# =============================================================================
# ACCOUNT / BALANCE
# =============================================================================

class AccountNotFound(LedgerError):
    kind = "ACCOUNT_NOT_FOUND"
    http_status = 404


class InsufficientBalance(LedgerError):
    kind = "INSUFFICIENT_BALANCE"
    http_status = 402


# =============================================================================
# KEY LIFECYCLE
# =============================================================================

class KeyNotFound(LedgerError):
    kind = "KEY_NOT_FOUND"
    http_status = 404


class InvalidKey(LedgerError):
    kind = "INVALID_KEY"
    http_status = 401


class KeyExpired(LedgerError):
    kind = "KEY_EXPIRED"
    http_status = 410


class DeviceLimitReached(LedgerError):
    kind = "DEVICE_LIMIT_REACHED"
    http_status = 409


# =============================================================================
# CODE LIFECYCLE
# =============================================================================

class InvalidCode(LedgerError):
    kind = "INVALID_CODE"
    http_status = 404


class CodeExpired(LedgerError):
    kind = "CODE_EXPIRED"
    http_status = 410


class CodeExhausted(LedgerError):
    kind = "CODE_EXHAUSTED"
    http_status = 409


class CodeAlreadyRedeemed(LedgerError):
    kind = "CODE_ALREADY_REDEEMED"
    http_status = 409


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class Conflict(LedgerError):
    """Write conflict that survived every retry. Safe for the caller to retry."""
    kind = "CONFLICT"
    http_status = 409


class DeadlineExceeded(LedgerError):
    kind = "DEADLINE_EXCEEDED"
    http_status = 504


class GenerationExhausted(LedgerError):
    kind = "GENERATION_EXHAUSTED"
    http_status = 500


class StorageFault(LedgerError):
    kind = "STORAGE_FAULT"
    http_status = 500


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        ValidationError, Forbidden, AccountNotFound, InsufficientBalance,
        KeyNotFound, InvalidKey, KeyExpired, DeviceLimitReached,
        InvalidCode, CodeExpired, CodeExhausted, CodeAlreadyRedeemed,
        Conflict, DeadlineExceeded, GenerationExhausted, StorageFault,
    )
}
