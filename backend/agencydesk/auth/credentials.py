"""
PIN credential hashing and validation.

Users log in with a display name and a 4-digit PIN. PINs are hashed with
passlib's pbkdf2_sha256 (salted, iterated); the raw PIN is never stored or
logged.
"""

import re

from passlib.hash import pbkdf2_sha256

PIN_PATTERN = re.compile(r"^\d{4}$")

_COMMON_PINS = frozenset({
    "1212", "1004", "2000", "2580", "6969", "4321", "1122", "7777",
})


def is_valid_pin_format(pin: str) -> bool:
    return bool(PIN_PATTERN.match(pin or ""))


def is_weak_pin(pin: str) -> bool:
    """
    Reject PINs that are trivially guessable.

    Repeated digits (0000), ascending or descending runs (1234, 9876) and
    a short list of very common choices.
    """
    if len(set(pin)) == 1:
        return True
    digits = [int(c) for c in pin]
    steps = {b - a for a, b in zip(digits, digits[1:])}
    if steps in ({1}, {-1}):
        return True
    return pin in _COMMON_PINS


def hash_pin(pin: str) -> str:
    return pbkdf2_sha256.hash(pin)


def verify_pin(pin: str, credential_hash: str) -> bool:
    """Verify a PIN against a stored hash. Malformed hashes fail closed."""
    if not pin or not credential_hash:
        return False
    try:
        return pbkdf2_sha256.verify(pin, credential_hash)
    except ValueError:
        return False
