import itertools

import pytest

from keyledger.errors import GenerationExhausted
from keyledger.services.code_generator import (
    HEX_ALPHABET,
    REFERRAL_ALPHABET,
    CodeGenerator,
    key_code_generator,
    referral_code_generator,
)
from keyledger.validation import REFERRAL_CODE_PATTERN


def test_configured_generators(app):
    key_gen = key_code_generator()
    code = key_gen.generate(lambda _: False)
    assert len(code) == 16
    assert set(code) <= set(HEX_ALPHABET)

    ref_gen = referral_code_generator()
    referral = ref_gen.generate(lambda _: False)
    assert REFERRAL_CODE_PATTERN.match(referral)
    assert set(referral) <= set(REFERRAL_ALPHABET)


def test_final_attempt_uses_widened_length(app):
    gen = CodeGenerator(alphabet="AB", length=4, widened_length=8, attempts=3)
    assert gen.lengths() == [4, 4, 8]

    seen = []

    def exists(candidate):
        seen.append(candidate)
        return len(candidate) == 4

    code = gen.generate(exists)

    assert len(code) == 8
    assert [len(c) for c in seen] == [4, 4, 8]


def test_exhaustion_raises_after_bounded_attempts(app):
    checks = itertools.count()
    gen = CodeGenerator(alphabet="A", length=2, widened_length=3, attempts=5)

    def exists(candidate):
        next(checks)
        return True

    with pytest.raises(GenerationExhausted):
        gen.generate(exists)

    assert next(checks) == 5


def test_injected_random_source_is_used():
    gen = CodeGenerator(alphabet="XYZ", length=3, widened_length=3, choice=lambda alphabet: alphabet[-1])
    assert gen.generate(lambda _: False) == "ZZZ"


@pytest.mark.parametrize("kwargs", [
    {"length": 0, "widened_length": 4},
    {"length": 6, "widened_length": 4},
    {"length": 4, "widened_length": 4, "attempts": 0},
])
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        CodeGenerator(alphabet="AB", **kwargs)


def test_referral_attempts_configured_separately():
    config = {"KEY_CODE_ATTEMPTS": 7, "REFERRAL_CODE_ATTEMPTS": 2}

    assert referral_code_generator(config).attempts == 2
    assert key_code_generator(config).attempts == 7
