"""Base interface for native decoding backends."""

from abc import ABC, abstractmethod
from typing import Sequence

from ..batch import BatchSlot


class BaseBackend(ABC):
    """
    Abstract base class for decoding backends.

    A backend owns one model and one decode context (the KV memory). The
    session drives it token by token and never touches model internals.

    Thread Safety:
        Backends are NOT assumed reentrant. Only one decode call may be in
        flight per backend instance; the owning session serializes access.
    """

    backend_name: str = "unknown"

    @abstractmethod
    def tokenize(self, text: str, add_leading_marker: bool) -> list[int]:
        """
        Convert text to token ids.

        Args:
            text: Input text.
            add_leading_marker: Prepend the beginning-of-sequence token.

        Returns:
            Token ids.
        """
        pass

    @abstractmethod
    def decode(self, slots: Sequence[BatchSlot]) -> bool:
        """
        Run the model over a batch of slots.

        Writes the slots into context memory and keeps logits for every slot
        that requests them, addressable by the slot's index in `slots`.

        Returns:
            True on success, False on failure.
        """
        pass

    @abstractmethod
    def sample_next(self, logits_index: int) -> int:
        """Sample the next token id from the logits of slot `logits_index` of the last decode."""
        pass

    @abstractmethod
    def is_end_of_generation(self, token_id: int) -> bool:
        pass

    @abstractmethod
    def token_to_bytes(self, token_id: int) -> bytes:
        """Raw byte piece for one token (may be a partial UTF-8 sequence)."""
        pass

    @abstractmethod
    def clear_memory(self, full_reset: bool) -> None:
        """Drop context memory. `full_reset` also resets any backend-side bookkeeping."""
        pass

    @abstractmethod
    def context_window_size(self) -> int:
        pass

    def synchronize(self) -> None:
        """Block until queued work has finished (used for benchmark timing)."""
        return

    def model_description(self) -> str:
        return self.backend_name

    def model_size_bytes(self) -> int:
        return 0

    def model_param_count(self) -> int:
        return 0
