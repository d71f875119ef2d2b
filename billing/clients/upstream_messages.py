"""Free-text upstream answers that mean "nothing left to do"

Neither upstream returns a structured status for an invoice that was already
canceled or already paid, so both conditions are detected by matching the
message text. The phrase lists below are the complete, documented set; a
wording change upstream breaks detection, and a structured status code from
the upstream would replace this module entirely.
"""

import re
from typing import Any, Optional

# Case-insensitive substrings; accented and unaccented spellings
ALREADY_CANCELED_PHRASES = (
    "já está cancelad",
    "ja esta cancelad",
)

ALREADY_PAID_PATTERNS = (
    re.compile(r"j[aá]\s*liquidad", re.IGNORECASE),
    re.compile(r"already\s*paid", re.IGNORECASE),
)


def is_already_canceled(*texts: Optional[Any]) -> bool:
    """True if any of the given upstream texts says the invoice is already canceled"""
    for text in texts:
        if text is None:
            continue
        lowered = str(text).lower()
        if any(phrase in lowered for phrase in ALREADY_CANCELED_PHRASES):
            return True
    return False


def is_already_paid(*texts: Optional[Any]) -> bool:
    """True if any of the given upstream texts says the invoice is already settled"""
    for text in texts:
        if text is None:
            continue
        if any(pattern.search(str(text)) for pattern in ALREADY_PAID_PATTERNS):
            return True
    return False
