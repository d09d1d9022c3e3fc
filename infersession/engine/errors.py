"""Error taxonomy for inference sessions."""

from __future__ import annotations


class InitializationFailure(RuntimeError):
    """The backend model/context could not be constructed."""


class DecodeFailure(RuntimeError):
    """A backend decode call reported failure.

    The session moves to FAILED. Output produced before the failure is kept on
    the exception so the host can still show it.
    """

    def __init__(self, message: str, *, phase: str, output_text: str = "", text: str = "") -> None:
        super().__init__(message)
        self.phase = phase
        self.output_text = output_text
        self.text = text


class CapacityExceeded(AssertionError):
    """A batch buffer slot was added without enough capacity (caller skipped ensure_capacity)."""


class InvalidSessionState(RuntimeError):
    """An operation was called in a session state that does not allow it."""
