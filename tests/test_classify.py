"""Tests for login output classification and auth code shape checks."""

from __future__ import annotations

import pytest

from tenantbox.auth import MarkerKind, classify_output, looks_like_auth_code
from tenantbox.auth.classify import strip_ansi

URL = "https://claude.ai/oauth/authorize?code=true&client_id=abc&state=xyz"


class TestStripAnsi:
    def test_removes_color_and_cursor_codes(self):
        assert strip_ansi("\x1b[1m\x1b[32mbold\x1b[0m \x1b7x\x1b8") == "bold x"

    def test_removes_osc_sequences(self):
        assert strip_ansi("\x1b]0;title\x07text") == "text"

    def test_normalises_line_endings(self):
        assert strip_ansi("a\r\nb\rc") == "a\nb\nc"


class TestClassifyOutput:
    def test_unknown_keeps_text_for_later(self):
        marker = classify_output("Loading...")
        assert marker.kind is MarkerKind.UNKNOWN
        assert marker.remainder == "Loading..."

    @pytest.mark.parametrize(
        ("text", "kind"),
        [
            ("Choose the text style that looks best\n", MarkerKind.HANDSHAKE_PROMPT),
            ("\x1b[1mSelect login method:\x1b[0m\n", MarkerKind.METHOD_PROMPT),
            ("Paste code here if prompted > ", MarkerKind.CODE_PROMPT),
            ("Login successful. Press Enter to continue\n", MarkerKind.SUCCESS),
        ],
    )
    def test_prompts(self, text, kind):
        assert classify_output(text).kind is kind

    def test_url_needs_trailing_whitespace(self):
        assert classify_output(URL[:30]).kind is MarkerKind.UNKNOWN
        marker = classify_output(f"Use the url below:\n{URL}\n")
        assert marker.kind is MarkerKind.URL_DETECTED
        assert marker.value == URL

    def test_url_split_by_ansi_codes(self):
        styled = f"\x1b[4m{URL[:25]}\x1b[0m\x1b[4m{URL[25:]}\x1b[0m\n"
        assert classify_output(styled).value == URL

    def test_non_auth_url_is_ignored(self):
        assert classify_output("See https://docs.example.com/help \n").kind is MarkerKind.UNKNOWN

    def test_failure_reason(self):
        marker = classify_output("OAuth error: invalid_grant (code expired)\n")
        assert marker.kind is MarkerKind.FAILURE
        assert marker.value == "OAuth error: invalid_grant (code expired)"

    def test_failure_waits_for_full_line(self):
        assert classify_output("OAuth error: inval").kind is MarkerKind.UNKNOWN

    def test_earliest_marker_wins_and_rest_remains(self):
        text = f"{URL}\n\nPaste code here if prompted > "
        first = classify_output(text)
        assert first.kind is MarkerKind.URL_DETECTED
        second = classify_output(first.remainder)
        assert second.kind is MarkerKind.CODE_PROMPT
        assert classify_output(second.remainder).kind is MarkerKind.UNKNOWN


class TestLooksLikeAuthCode:
    @pytest.mark.parametrize(
        "code",
        [
            "abc123",
            "A" * 24 + "#" + "b" * 24,
            "  4_0AbCdEf-ghIJ_kl.mn  ",
        ],
    )
    def test_accepts(self, code):
        assert looks_like_auth_code(code)

    @pytest.mark.parametrize(
        "code",
        [
            "",
            "abc",
            "x" * 129,
            "hello world",
            "/login",
            "--__..",
            "short#" + "b" * 24,
            "a" * 24 + "#" + "b" * 24 + "#" + "c" * 24,
        ],
    )
    def test_rejects(self, code):
        assert not looks_like_auth_code(code)
