"""Marker recognition for interactive login output.

All knowledge about what the login program prints lives here. The driver
feeds it accumulated output and acts on the returned :class:`Marker`;
``UNKNOWN`` is a normal result while a marker is still arriving in pieces.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

_ANSI_CSI_PATTERN = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_ANSI_OSC_PATTERN = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
# single-character escapes such as ESC 7 / ESC 8 (save/restore cursor)
_ANSI_SHORT_PATTERN = re.compile(r"\x1b[78=>]")

# A URL only counts once whitespace follows it; until then it may be cut short.
_URL_PATTERN = re.compile(r"https://[^\s]+(?=\s)")
_AUTH_URL_HINTS = ("oauth", "authorize")


class MarkerKind(str, Enum):
    UNKNOWN = "unknown"
    HANDSHAKE_PROMPT = "handshake_prompt"
    METHOD_PROMPT = "method_prompt"
    URL_DETECTED = "url_detected"
    CODE_PROMPT = "code_prompt"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Marker:
    kind: MarkerKind
    value: str = ""  # URL for URL_DETECTED, reason for FAILURE
    remainder: str = ""  # cleaned text after the marker, not yet classified


_PROMPT_PATTERNS: tuple[tuple[MarkerKind, re.Pattern[str]], ...] = (
    (MarkerKind.HANDSHAKE_PROMPT, re.compile(r"Choose the text style|Select a theme", re.I)),
    (MarkerKind.METHOD_PROMPT, re.compile(r"Select login method", re.I)),
    (
        MarkerKind.CODE_PROMPT,
        re.compile(r"Paste code here|Paste the code|Enter (?:the )?authorization code", re.I),
    ),
    (MarkerKind.SUCCESS, re.compile(r"Login successful|Successfully logged in", re.I)),
    (
        MarkerKind.FAILURE,
        re.compile(
            r"(?P<reason>(?:OAuth error|Login failed|Authentication failed|Invalid code)[^\n]*)\n",
            re.I,
        ),
    ),
)


def strip_ansi(text: str) -> str:
    """Drop terminal escape sequences and normalise line endings."""
    cleaned = _ANSI_OSC_PATTERN.sub("", text)
    cleaned = _ANSI_CSI_PATTERN.sub("", cleaned)
    cleaned = _ANSI_SHORT_PATTERN.sub("", cleaned)
    return cleaned.replace("\r\n", "\n").replace("\r", "\n")


def _find_auth_url(text: str) -> re.Match[str] | None:
    for match in _URL_PATTERN.finditer(text):
        url = match.group(0).lower()
        if any(hint in url for hint in _AUTH_URL_HINTS):
            return match
    return None


def classify_output(text: str) -> Marker:
    """Return the earliest marker in ``text`` (raw or already cleaned).

    Markers are reported in the order the program printed them; callers loop
    on :attr:`Marker.remainder` until ``UNKNOWN`` comes back. On ``UNKNOWN``
    the remainder is the whole cleaned input, to be retried once more output
    arrives.
    """
    cleaned = strip_ansi(text)
    best: tuple[int, int, MarkerKind, str] | None = None

    url_match = _find_auth_url(cleaned)
    if url_match is not None:
        best = (url_match.start(), url_match.end(), MarkerKind.URL_DETECTED, url_match.group(0))

    for kind, pattern in _PROMPT_PATTERNS:
        match = pattern.search(cleaned)
        if match is None or (best is not None and match.start() >= best[0]):
            continue
        value = match.group("reason").strip() if "reason" in pattern.groupindex else ""
        best = (match.start(), match.end(), kind, value)

    if best is None:
        return Marker(MarkerKind.UNKNOWN, remainder=cleaned)
    _, end, kind, value = best
    return Marker(kind, value=value, remainder=cleaned[end:])
