"""Payment codes embedded in bank-transfer notes.

A code is the configured prefix followed by exactly eight digits, e.g.
``PERF12345678``. Banks echo the note back with their own decoration, so
extraction searches anywhere in the text and ignores case.
"""
import re
import secrets
from typing import Optional

from app.config import PAYMENT_CODE_PREFIX

DIGITS = 8
# Seed digits kept at the front of the suffix; the rest is random.
SEED_DIGITS = 2

_prefix = re.escape(PAYMENT_CODE_PREFIX)
_SEARCH_PATTERN = re.compile(rf"{_prefix}(\d{{{DIGITS}}})(?!\d)", re.IGNORECASE)
_FULL_PATTERN = re.compile(rf"{_prefix}\d{{{DIGITS}}}", re.IGNORECASE)


def generate(seed: Optional[str] = None) -> str:
    seed_part = re.sub(r"\D", "", seed or "")[-SEED_DIGITS:]
    random_part = "".join(secrets.choice("0123456789") for _ in range(DIGITS))
    suffix = (seed_part + random_part)[:DIGITS].rjust(DIGITS, "0")
    return f"{PAYMENT_CODE_PREFIX}{suffix}"


def extract(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = _SEARCH_PATTERN.search(text)
    if not match:
        return None
    return f"{PAYMENT_CODE_PREFIX}{match.group(1)}"


def is_valid(code: Optional[str]) -> bool:
    return bool(code) and _FULL_PATTERN.fullmatch(code) is not None
