"""Shape check for authorization codes pasted back by users."""

from __future__ import annotations

_EXTRA_CODE_CHARS = frozenset("-_.#")


def looks_like_auth_code(text: str) -> bool:
    """Return True if ``text`` plausibly is an OAuth authorization code.

    Codes are 6-128 characters of letters, digits and ``-_.#`` with at least
    six alphanumerics. Assistant codes take the form ``<code>#<state>``;
    when a ``#`` is present there must be exactly one, with 20+ characters
    on each side.
    """
    text = text.strip()
    if not 6 <= len(text) <= 128:
        return False
    if not all(c.isalnum() or c in _EXTRA_CODE_CHARS for c in text):
        return False
    if sum(c.isalnum() for c in text) < 6:
        return False
    if "#" in text:
        parts = text.split("#")
        if len(parts) != 2 or len(parts[0]) < 20 or len(parts[1]) < 20:
            return False
    return True
