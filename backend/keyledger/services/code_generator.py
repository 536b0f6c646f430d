# Overview: Bounded random code generation for keys and referral codes.

"""
Code Generator

WHY: Key codes and referral codes must be globally unique. Codes are drawn
from a cryptographically secure source and collision-checked; the number of
attempts is bounded so a saturated code space fails loudly instead of
looping forever.

POLICY:
- attempts - 1 draws at the base length
- one final draw at the widened length (a far larger space)
- all collided -> GenerationExhausted

The database unique constraint remains the final arbiter; a collision that
slips past the existence check surfaces as IntegrityError at flush time and
the caller retries the whole unit.
"""

from __future__ import annotations

import secrets
import string
from typing import Callable

from flask import current_app

from ..errors import GenerationExhausted


HEX_ALPHABET = "0123456789ABCDEF"
REFERRAL_ALPHABET = string.ascii_uppercase + string.digits


class CodeGenerator:
    def __init__(
        self,
        *,
        alphabet: str,
        length: int,
        widened_length: int,
        attempts: int = 5,
        choice: Callable[[str], str] = secrets.choice,
    ):
        if length <= 0 or widened_length < length:
            raise ValueError("widened_length must be >= length > 0")
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.alphabet = alphabet
        self.length = length
        self.widened_length = widened_length
        self.attempts = attempts
        self._choice = choice

    def _draw(self, length: int) -> str:
        return "".join(self._choice(self.alphabet) for _ in range(length))

    def lengths(self) -> list[int]:
        """Length used for each attempt, in order."""
        if self.attempts == 1:
            return [self.length]
        return [self.length] * (self.attempts - 1) + [self.widened_length]

    def generate(self, exists: Callable[[str], bool]) -> str:
        """
        Return a code for which exists(code) is False.

        Raises GenerationExhausted after the bounded number of attempts.
        """
        for length in self.lengths():
            candidate = self._draw(length)
            if not exists(candidate):
                return candidate
        current_app.logger.error(
            "Code generation exhausted after %d attempts (length %d, widened %d)",
            self.attempts, self.length, self.widened_length,
        )
        raise GenerationExhausted("Could not generate a unique code")


def key_code_generator(config=None) -> CodeGenerator:
    config = config if config is not None else current_app.config
    return CodeGenerator(
        alphabet=HEX_ALPHABET,
        length=config.get("KEY_CODE_LENGTH", 16),
        widened_length=config.get("KEY_CODE_WIDENED_LENGTH", 24),
        attempts=config.get("KEY_CODE_ATTEMPTS", 5),
    )


def referral_code_generator(config=None) -> CodeGenerator:
    config = config if config is not None else current_app.config
    return CodeGenerator(
        alphabet=REFERRAL_ALPHABET,
        length=config.get("REFERRAL_CODE_LENGTH", 10),
        widened_length=config.get("REFERRAL_CODE_WIDENED_LENGTH", 12),
        attempts=config.get("REFERRAL_CODE_ATTEMPTS", 5),
    )
