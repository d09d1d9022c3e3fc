"""Session state and step result types.

These types are shared by the session, the hosts, and the benchmark harness.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Literal

FinishReason = Literal["stop", "length", "stop_sequence", "context_full"]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one decode step."""

    text: str
    done: bool = False
    finish_reason: FinishReason | None = None


@dataclass(frozen=True)
class ModelInfo:
    """Information about the model behind a backend."""

    description: str
    size_bytes: int = 0
    param_count: int = 0
    backend: str = "unknown"
    context_window: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def size_gib(self) -> float:
        return self.size_bytes / (1024.0**3)

    @property
    def params_billions(self) -> float:
        return self.param_count / 1e9
