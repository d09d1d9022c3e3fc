"""Incremental stop-string matching on decoded text.

Matching runs on text, not token ids, so a stop string is found even when it
does not line up with token boundaries. Everything from the match start on is
discarded, including the rest of the token that completed the match.
"""

from __future__ import annotations

from typing import Sequence


class StopMatcher:
    def __init__(self, stop_strings: Sequence[str] = ()) -> None:
        self._stops = tuple(s for s in stop_strings if s)
        self._text = ""
        # Length of `_text` already handed to the caller.
        self._emitted = 0
        self.matched_stop: str | None = None

    @property
    def stop_strings(self) -> tuple[str, ...]:
        return self._stops

    @property
    def text(self) -> str:
        return self._text

    @property
    def matched(self) -> bool:
        return self.matched_stop is not None

    def feed(self, text: str) -> str:
        """Append an increment and return the part of it that may be emitted."""
        if self.matched or not text:
            return ""

        prev_len = len(self._text)
        self._text += text

        for stop in self._stops:
            # Text before prev_len was already scanned without a match.
            idx = self._text.find(stop, max(0, prev_len - len(stop) + 1))
            if idx == -1:
                continue
            self.matched_stop = stop
            self._text = self._text[:idx]
            out = self._text[self._emitted :] if idx > self._emitted else ""
            self._emitted = len(self._text)
            return out

        out = self._text[self._emitted :]
        self._emitted = len(self._text)
        return out

    def reset(self) -> None:
        self._text = ""
        self._emitted = 0
        self.matched_stop = None
