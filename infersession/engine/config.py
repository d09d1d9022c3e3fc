"""Session and backend configuration.

Both configs are frozen dataclasses. Hosts build them from CLI flags or
request bodies through `merged()`, which validates every overridden field.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True)
class SessionConfig:
    """Per-session defaults and limits.

    Notes:
    - `initial_batch_capacity` matches the default batch size of the native
      context; the buffer grows on demand when a prompt is longer.
    - `max_user_tokens` is a hard cap applied to the user segment before the
      context fit (None = no cap).
    """

    default_max_new_tokens: int = 512
    initial_batch_capacity: int = 256
    initial_lanes: int = 1
    max_user_tokens: int | None = None
    flush_on_finish: bool = True

    def validate(self) -> None:
        if self.default_max_new_tokens <= 0:
            raise ValueError("'default_max_new_tokens' must be > 0.")
        if self.initial_batch_capacity <= 0:
            raise ValueError("'initial_batch_capacity' must be > 0.")
        if self.initial_lanes <= 0:
            raise ValueError("'initial_lanes' must be > 0.")
        if self.max_user_tokens is not None and self.max_user_tokens < 0:
            raise ValueError("'max_user_tokens' must be >= 0.")

    def merged(self, override: Any | None) -> "SessionConfig":
        """Merge a request-level override mapping into a new config."""
        if override is None:
            return self
        if isinstance(override, SessionConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("session config override must be an object.")

        data: dict[str, Any] = dict(override)
        unknown = set(data) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session config keys: {sorted(unknown)}")

        changes: dict[str, Any] = {}
        for name in ("default_max_new_tokens", "initial_batch_capacity", "initial_lanes"):
            if name in data:
                changes[name] = _coerce_int(data[name], name)
        if "max_user_tokens" in data:
            raw = data["max_user_tokens"]
            changes["max_user_tokens"] = None if raw is None else _coerce_int(raw, "max_user_tokens", min_value=0)
        if "flush_on_finish" in data:
            if not isinstance(data["flush_on_finish"], bool):
                raise ValueError("'flush_on_finish' must be a boolean.")
            changes["flush_on_finish"] = data["flush_on_finish"]

        merged = replace(self, **changes)
        merged.validate()
        return merged


_SESSION_FIELDS = {
    "default_max_new_tokens",
    "initial_batch_capacity",
    "initial_lanes",
    "max_user_tokens",
    "flush_on_finish",
}


@dataclass(frozen=True)
class BackendConfig:
    """Native context settings used by `TransformersBackend`.

    Defaults are the standardized benchmark settings: 1024-token window,
    256-token batches, temperature 0.4 with a fixed sampling seed.
    """

    n_ctx: int = 1024
    n_batch: int = 256
    temperature: float = 0.4
    seed: int | None = 1234
    device: str = "cpu"
    dtype: str = "float32"

    def validate(self) -> None:
        if self.n_ctx <= 1:
            raise ValueError("'n_ctx' must be > 1.")
        if self.n_batch <= 0:
            raise ValueError("'n_batch' must be > 0.")
        if self.temperature < 0:
            raise ValueError(f"Temperature must be >= 0, got {self.temperature}")
        if self.dtype not in ("float16", "bfloat16", "float32"):
            raise ValueError(f"Unsupported dtype: {self.dtype!r}. Expected float16|bfloat16|float32.")

    def merged(self, override: Any | None) -> "BackendConfig":
        if override is None:
            return self
        if isinstance(override, BackendConfig):
            override.validate()
            return override
        if not isinstance(override, dict):
            raise ValueError("backend config override must be an object.")

        data: dict[str, Any] = dict(override)
        changes: dict[str, Any] = {}
        if "n_ctx" in data:
            changes["n_ctx"] = _coerce_int(data["n_ctx"], "n_ctx", min_value=2)
        if "n_batch" in data:
            changes["n_batch"] = _coerce_int(data["n_batch"], "n_batch")
        if "temperature" in data:
            try:
                changes["temperature"] = float(data["temperature"])
            except (TypeError, ValueError) as exc:
                raise ValueError("'temperature' must be a number.") from exc
        if "seed" in data:
            changes["seed"] = None if data["seed"] is None else _coerce_int(data["seed"], "seed", min_value=0)
        for name in ("device", "dtype"):
            if name in data:
                if not isinstance(data[name], str) or not data[name]:
                    raise ValueError(f"'{name}' must be a non-empty string.")
                changes[name] = data[name]

        merged = replace(self, **changes)
        merged.validate()
        return merged


def _coerce_int(value: Any, name: str, *, min_value: int = 1) -> int:
    if isinstance(value, bool):
        raise ValueError(f"'{name}' must be an integer.")
    try:
        out = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be an integer.") from exc
    if out < min_value:
        raise ValueError(f"'{name}' must be >= {min_value}.")
    return out
