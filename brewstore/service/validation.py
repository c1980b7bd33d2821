from __future__ import annotations

import re
import unicodedata
from typing import Optional

_NAME_PATTERN = re.compile(r"^[A-Za-z\s]{2,}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_name(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    name = normalize_unicode(value).strip()
    if not _NAME_PATTERN.match(name):
        return None
    return name


def normalize_email_address(value: Optional[str]) -> Optional[str]:
    """Lowercased address, or None if it is not a plausible email."""
    if not isinstance(value, str):
        return None
    normalized = normalize_unicode(value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        return None
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return None
    if not _EMAIL_LOCAL_PART.match(local):
        return None
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        return None
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return None
    return normalized
