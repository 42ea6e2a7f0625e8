from __future__ import annotations

import re
from typing import Optional

_NON_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize_phone(raw: object, default_country_code: str = "1") -> Optional[str]:
    """Canonicalise a phone string to a ``+<country><subscriber>`` key.

    Returns ``None`` for anything that cannot be read as a phone number. The
    result is a fixed point: normalising an accepted key returns it unchanged.
    """
    if raw is None:
        return None
    value = _NON_PHONE_CHARS.sub("", str(raw).strip())
    if not value:
        return None

    if value.startswith("+"):
        return value if len(value) >= 8 else None
    if not value.isdigit():
        return None
    if len(value) == 10:
        return f"+{default_country_code}{value}"
    if len(value) == 11 and value.startswith(default_country_code):
        return f"+{value}"
    return None
