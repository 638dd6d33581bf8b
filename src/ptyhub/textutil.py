"""Text helpers for turning raw terminal output into readable summaries."""

from __future__ import annotations

import re

# CSI sequences, OSC sequences (BEL or ST terminated), and lone two-byte escapes
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_control_chars(text: str) -> str:
    """Remove control characters other than tab and newline.

    Carriage returns are dropped too; summaries are line oriented.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n"):
            cleaned.append(ch)
        elif cp >= 32 and cp not in range(0x7F, 0xA0):
            if cp not in range(0xFFF9, 0xFFFC):
                cleaned.append(ch)
    return "".join(cleaned)


def clean_output(text: str) -> str:
    return sanitize_control_chars(strip_ansi(text))


def last_lines(text: str, n: int = 3) -> str:
    """Last ``n`` non-empty lines of cleaned output."""
    lines = [line for line in clean_output(text).split("\n") if line.strip()]
    return "\n".join(lines[-n:])
