"""Assemble raw token bytes into text.

A single token can carry part of a multi-byte character. Bytes are held back
until they decode, so text is never emitted half-formed and never withheld
forever.
"""

from __future__ import annotations


def _decodes(data: bytes) -> bool:
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


class Utf8Assembler:
    """Two-state buffer: pending raw bytes vs. emitted text."""

    def __init__(self) -> None:
        self._pending = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    def push(self, raw: bytes) -> str:
        """Add one token's bytes; return the text that is ready (possibly "")."""
        self._pending.extend(raw)
        if not self._pending:
            return ""

        data = bytes(self._pending)
        if _decodes(data):
            self._pending.clear()
            return data.decode("utf-8")

        # Earlier bytes may form a complete unit with only a broken remainder;
        # any strictly decodable proper suffix means the buffer is emitted as-is.
        for start in range(1, len(data)):
            if _decodes(data[start:]):
                self._pending.clear()
                return data.decode("utf-8", errors="replace")

        return ""

    def flush(self) -> str:
        """Emit whatever is pending, replacing invalid bytes."""
        if not self._pending:
            return ""
        text = bytes(self._pending).decode("utf-8", errors="replace")
        self._pending.clear()
        return text

    def reset(self) -> None:
        self._pending.clear()
