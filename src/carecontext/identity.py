"""
Canonical user ids.

Customer ids are stored as "U<digits>" (for example "U101"). Sessions arrive in
several shapes, all of which resolve to that form:

- "U101", "u101", "U-101", "101"      -> "U101"
- "user-1", "user_1", "user1"         -> "U101"  (demo accounts are numbered from 101)
- "U101-3f2a...", "user-1-3f2a..."    -> "U101"  (session id carrying a suffix)
- "", "demo", "guest", "anonymous"    -> None    (no personal scope)

Anything else is returned stripped but otherwise unchanged.
"""
from __future__ import annotations

import re

DEMO_USER_OFFSET = 100

GENERIC_IDENTITIES = frozenset({"", "demo", "guest", "anonymous", "default", "unknown"})

_CANONICAL_RE = re.compile(r"^u[-_]?(\d+)(?:[-_].*)?$", re.IGNORECASE)
_DEMO_ALIAS_RE = re.compile(r"^user[-_]?(\d+)(?:[-_].*)?$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^(\d+)$")


def is_generic_identity(value: str | None) -> bool:
    return str(value or "").strip().lower() in GENERIC_IDENTITIES


def normalize_user_id(value: str | None) -> str | None:
    """Returns the canonical "U<digits>" id, the raw id, or None for a generic identity."""
    raw = str(value or "").strip()
    if is_generic_identity(raw):
        return None

    match = _DEMO_ALIAS_RE.match(raw)
    if match:
        return f"U{DEMO_USER_OFFSET + int(match.group(1))}"

    match = _CANONICAL_RE.match(raw) or _DIGITS_RE.match(raw)
    if match:
        return f"U{int(match.group(1))}"

    return raw
