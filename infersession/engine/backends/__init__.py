# Native decoding backends
#
# Each backend implements the primitives the session drives:
#   - tokenize / token_to_bytes
#   - decode over a batch of slots
#   - sample_next / is_end_of_generation
#   - clear_memory / context_window_size
#
# The session stays backend-agnostic; heavy dependencies live only in the
# concrete backend modules.

from .base import BaseBackend

__all__ = ["BaseBackend"]
