"""
placement_core/numeric.py
─────────────────────────
Canonical signed 64-bit integer parsing for numeric taint/toleration values.

Why a dedicated parser
───────────────────────
The Gt and Lt toleration operators compare taint and toleration values as
integers. Python's int() is far too forgiving for this:

    int("0550")   → 550     (leading zero silently accepted)
    int("+7")     → 7       (explicit sign accepted)
    int(" 7 ")    → 7       (whitespace accepted)
    int("1_000")  → 1000    (underscore separators accepted)

Two different spellings of the same number would then compare equal, and a
value written by one tool could match where another tool refuses it. The
canonical form accepted here is:

    -?(0|[1-9][0-9]*)      and the result must fit in a signed 64-bit int

"-0" is rejected as non-canonical.
"""

from __future__ import annotations

import re

from placement_engine.shared.errors import ValidationError

INT64_MIN: int = -(2 ** 63)
INT64_MAX: int = 2 ** 63 - 1

_CANONICAL_INT = re.compile(r"-?(0|[1-9][0-9]*)")


def parse_int64(text: str, field: str = "value") -> int:
    """
    Parse a canonical signed 64-bit integer.

    Args:
        text:  The string to parse.
        field: Field name used in the error message.

    Returns:
        The parsed integer.

    Raises:
        ValidationError: if text is empty, has a leading zero, a "+" sign,
                         whitespace, "-0", or falls outside int64.
    """
    if not isinstance(text, str) or not _CANONICAL_INT.fullmatch(text):
        raise ValidationError(field, text, "must be a canonical signed 64-bit integer")
    if text == "-0":
        raise ValidationError(field, text, "negative zero is not canonical")
    value = int(text)
    if value < INT64_MIN or value > INT64_MAX:
        raise ValidationError(field, text, "out of signed 64-bit range")
    return value


def is_int64(text: str) -> bool:
    """True if text parses with parse_int64()."""
    try:
        parse_int64(text)
    except ValidationError:
        return False
    return True
