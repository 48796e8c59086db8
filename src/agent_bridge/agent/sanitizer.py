"""Terminal control sequence stripping for PTY-wrapped agent output."""

from __future__ import annotations

import codecs
import re

_CSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_CHARSET_RE = re.compile(r"\x1b\([A-Z]")
_KEYPAD_RE = re.compile(r"\x1b[=>]")
_PRIVATE_CSI_RE = re.compile(r"\x1b\[\?[0-9;]*[a-zA-Z]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_PATTERNS = (_CSI_RE, _OSC_RE, _CHARSET_RE, _KEYPAD_RE, _PRIVATE_CSI_RE, _CONTROL_RE)

# An escape sequence that may still be completed by the next chunk.
_PARTIAL_TAIL_RE = re.compile(r"(?:\x1b(?:\[\??[0-9;]*|\][^\x07\x1b]*\x1b?|\()?|\r)\Z")
MAX_HELD_TAIL = 4096


def sanitize(data: bytes | str) -> str:
    """Strip control sequences and normalize line endings to ``\\n``."""
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
    for pattern in _PATTERNS:
        text = pattern.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")


class IncrementalSanitizer:
    """Chunk-wise `sanitize` that is independent of where chunks are split.

    Holds back an incomplete UTF-8 sequence, an unterminated escape sequence,
    or a trailing carriage return until the next chunk arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._tail = ""

    def feed(self, chunk: bytes) -> str:
        text = self._tail + self._decoder.decode(chunk)
        self._tail = ""
        match = _PARTIAL_TAIL_RE.search(text)
        if match is not None and match.start() < len(text) and len(text) - match.start() <= MAX_HELD_TAIL:
            self._tail = text[match.start() :]
            text = text[: match.start()]
        return sanitize(text)

    def flush(self) -> str:
        text = self._tail + self._decoder.decode(b"", final=True)
        self._tail = ""
        return sanitize(text)
