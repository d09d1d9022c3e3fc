import itertools
import os
import sys

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)

from infersession.engine.backends.base import BaseBackend  # noqa: E402

BOS = 1
EOS = 2


class FakeBackend(BaseBackend):
    """Character-level backend with a scripted token stream.

    Tokens are code points; `BOS` is prepended when a leading marker is
    requested. `sample_next` returns the script in order, then `EOS`.
    """

    backend_name = "fake"

    def __init__(
        self,
        script=(),
        *,
        n_ctx=1024,
        pieces=None,
        fail_on_decode=None,
        raise_on_decode=None,
    ):
        self.script = list(script)
        self.n_ctx = n_ctx
        self.pieces = dict(pieces or {})
        self.fail_on_decode = fail_on_decode
        self.raise_on_decode = raise_on_decode
        self.decode_calls = []
        self.clear_calls = []
        self.sample_calls = []
        self.sync_calls = 0
        self._cursor = 0

    def tokenize(self, text, add_leading_marker):
        ids = [ord(c) for c in text]
        return [BOS] + ids if add_leading_marker else ids

    def decode(self, slots):
        self.decode_calls.append([(s.token_id, s.position, s.seq_ids, s.wants_logits) for s in slots])
        n = len(self.decode_calls)
        if self.raise_on_decode is not None and n == self.raise_on_decode:
            raise RuntimeError("device lost")
        if self.fail_on_decode is not None and n == self.fail_on_decode:
            return False
        return True

    def sample_next(self, logits_index):
        self.sample_calls.append(logits_index)
        if self._cursor < len(self.script):
            tok = self.script[self._cursor]
            self._cursor += 1
            return tok
        return EOS

    def is_end_of_generation(self, token_id):
        return token_id == EOS

    def token_to_bytes(self, token_id):
        if token_id in self.pieces:
            return self.pieces[token_id]
        return chr(token_id).encode("utf-8")

    def clear_memory(self, full_reset):
        self.clear_calls.append(full_reset)

    def context_window_size(self):
        return self.n_ctx

    def synchronize(self):
        self.sync_calls += 1

    def model_description(self):
        return "fake 0.0B"

    def model_size_bytes(self):
        return 2 * 1024**3

    def model_param_count(self):
        return 1_500_000_000


@pytest.fixture
def make_backend():
    return FakeBackend


@pytest.fixture
def step_clock():
    """A clock that advances one second per call."""
    counter = itertools.count()
    return lambda: float(next(counter))
