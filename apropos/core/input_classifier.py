"""Turn raw terminal keystrokes into committed input lines.

Browser terminals send raw bytes: printable text, CR on Enter, DEL on backspace and
ANSI escape sequences for arrow keys. parse_input() tokenizes a chunk; the
InputClassifier keeps a per-session pending line and reports what was committed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

ESC = "\x1b"
DEL = "\x7f"

_ARROW_SEQUENCES = {
    "\x1b[A": "Up",
    "\x1bOA": "Up",
    "\x1b[B": "Down",
    "\x1bOB": "Down",
    "\x1b[C": "Right",
    "\x1bOC": "Right",
    "\x1b[D": "Left",
    "\x1bOD": "Left",
}

# Applied in order; each match becomes a single space before whitespace collapsing.
_SANITIZE_PATTERNS = [
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"),  # OSC
    re.compile(r"\x1bP.*?\x1b\\", re.DOTALL),  # DCS
    re.compile(r"\x1b\^.*?\x1b\\", re.DOTALL),  # PM
    re.compile(r"\x1b_.*?\x1b\\", re.DOTALL),  # APC
    re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]"),  # CSI, including private modes like ESC[>0;276;0c
    re.compile(r"\x1b[@-Z\\-_]"),
    re.compile(r"\[(?:200|201)~"),  # bracketed paste markers left after ESC removal
    re.compile(r"[\x00-\x08\x0b-\x1f\x7f]"),
]
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class InputToken:
    """One classified piece of a keystroke chunk.

    type is "text", "enter", "backspace" or "key"; value holds the text run or key name.
    """

    type: str
    value: str = ""


def parse_input(data: str) -> list[InputToken]:
    """Split a raw keystroke chunk into tokens.

    Arrow sequences are only recognized when fully contained in the chunk. A lone ESC
    stays in the text run and is removed when the line is sanitized.
    """
    tokens: list[InputToken] = []
    buffer: list[str] = []

    def flush() -> None:
        if buffer:
            tokens.append(InputToken("text", "".join(buffer)))
            buffer.clear()

    index = 0
    length = len(data)
    while index < length:
        char = data[index]
        if char == ESC:
            key = _ARROW_SEQUENCES.get(data[index : index + 3])
            if key:
                flush()
                tokens.append(InputToken("key", key))
                index += 3
                continue
            buffer.append(char)
        elif char in ("\r", "\n"):
            flush()
            tokens.append(InputToken("enter"))
        elif char == "\t":
            buffer.append("  ")
        elif char == DEL:
            flush()
            tokens.append(InputToken("backspace"))
        elif char >= " ":
            buffer.append(char)
        index += 1

    flush()
    return tokens


def sanitize_committed_input(value: Optional[str]) -> str:
    """Remove escape sequences and control characters from a committed line."""
    text = value or ""
    for pattern in _SANITIZE_PATTERNS:
        text = pattern.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class InputClassifier:
    """Tracks the uncommitted line for every session."""

    def __init__(self) -> None:
        self._pending: dict[str, str] = {}

    def ingest(self, session_id: str, data: str) -> Optional[str]:
        """Apply a keystroke chunk to the session's pending line.

        Returns:
            The last line committed (Enter) in this chunk, sanitized, or None
        """
        buffer = self._pending.get(session_id, "")
        committed: Optional[str] = None
        for token in parse_input(data or ""):
            if token.type == "text":
                buffer += token.value
            elif token.type == "backspace":
                buffer = buffer[:-1]
            elif token.type == "enter":
                committed = sanitize_committed_input(buffer)
                buffer = ""
        self._pending[session_id] = buffer
        return committed

    def pending(self, session_id: str) -> str:
        return self._pending.get(session_id, "")

    def discard(self, session_id: str) -> None:
        self._pending.pop(session_id, None)
