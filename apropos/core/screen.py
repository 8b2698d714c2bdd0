"""Pure helpers for pane text: ANSI stripping, normalization, diffs and fingerprints."""

from __future__ import annotations

import re
from dataclasses import dataclass

_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_HORIZONTAL_WS_RE = re.compile(r"[^\S\n]+")

# Sequences that would wipe the client's scrollback: alternate screen enter/leave,
# erase display / erase scrollback, and full terminal reset (RIS).
_SCREEN_RESET_RE = re.compile(r"\x1b\[\?(?:1049|1047|47)[hl]|\x1b\[[23]J|\x1bc")


@dataclass(frozen=True)
class ScreenDiff:
    """Result of comparing a fresh pane capture to the last one sent."""

    changed: bool
    text: str


def strip_ansi(raw: str) -> str:
    """Remove CSI escape sequences (colors, cursor movement) from text."""
    return _CSI_RE.sub("", raw or "")


def normalize_pane_text(raw: str) -> str:
    """Strip ANSI, turn CR into LF, collapse horizontal whitespace and trim."""
    text = strip_ansi(raw).replace("\r", "\n")
    return _HORIZONTAL_WS_RE.sub(" ", text).strip()


def fingerprint(raw: str, chars: int) -> str:
    """Cheap change detector: the last `chars` characters of the normalized pane."""
    return normalize_pane_text(raw)[-chars:]


def diff_screen(previous: str, raw: str) -> ScreenDiff:
    """Decide whether a captured pane differs from the last rendered screen.

    Args:
        previous: Text of the last `screen` frame sent ("" before the first)
        raw: Fresh `capture-pane` output

    Returns:
        ScreenDiff with the trailing-newline-trimmed text and whether it changed
    """
    text = raw.rstrip("\n")
    return ScreenDiff(changed=text != previous, text=text)


def strip_screen_resets(data: str) -> str:
    return _SCREEN_RESET_RE.sub("", data)


# Trailing escape prefix that may still complete into a screen reset
_PARTIAL_RESET_RE = re.compile(r"\x1b(?:\[\??[0-9]{0,4})?\Z")


def split_partial_reset(data: str) -> tuple[str, str]:
    """Split `data` into the part safe to strip now and an unterminated escape tail.

    Streamed output can cut a sequence such as ESC[2J between two reads; the tail is
    held back and prepended to the next chunk.
    """
    match = _PARTIAL_RESET_RE.search(data)
    if match is None:
        return data, ""
    return data[: match.start()], data[match.start() :]
