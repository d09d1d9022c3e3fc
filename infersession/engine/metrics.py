"""Latency and throughput telemetry for one generation, plus trial aggregation."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Sequence

_MS = 1000.0
_GIB = 1024.0**3


@dataclass(frozen=True)
class MetricsSnapshot:
    """Timings in milliseconds. A value whose start stamp is missing is 0."""

    ttft_ms: float
    prefill_latency_ms: float
    decode_latency_ms: float
    prefill_tokens: int
    decode_tokens: int

    @property
    def prefill_tokens_per_s(self) -> float:
        if self.prefill_tokens > 0 and self.prefill_latency_ms > 0:
            return self.prefill_tokens / (self.prefill_latency_ms / _MS)
        return 0.0

    @property
    def decode_tokens_per_s(self) -> float:
        if self.decode_tokens > 0 and self.decode_latency_ms > 0:
            return self.decode_tokens / (self.decode_latency_ms / _MS)
        return 0.0

    @property
    def total_tokens(self) -> int:
        return self.prefill_tokens + self.decode_tokens

    @property
    def total_latency_ms(self) -> float:
        return self.prefill_latency_ms + self.decode_latency_ms

    def to_dict(self) -> dict[str, float | int]:
        return {
            "ttft_ms": self.ttft_ms,
            "prefill_latency_ms": self.prefill_latency_ms,
            "decode_latency_ms": self.decode_latency_ms,
            "prefill_tokens": self.prefill_tokens,
            "decode_tokens": self.decode_tokens,
            "prefill_tokens_per_s": self.prefill_tokens_per_s,
            "decode_tokens_per_s": self.decode_tokens_per_s,
        }


class MetricsTracker:
    """Stamps phase boundaries of a single generation.

    Timestamps come from `clock` (seconds, monotonic). `None` means the phase
    has not been reached yet.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self.prefill_start: float | None = None
        self.decode_start: float | None = None
        self.first_token_time: float | None = None
        self.prefill_tokens = 0
        self.decode_tokens = 0

    def reset(self) -> None:
        self.prefill_start = None
        self.decode_start = None
        self.first_token_time = None
        self.prefill_tokens = 0
        self.decode_tokens = 0

    def begin_prefill(self, prompt_tokens: int = 0) -> None:
        self.reset()
        self.prefill_start = self._clock()
        self.prefill_tokens = int(prompt_tokens)

    def end_prefill(self) -> None:
        self.decode_start = self._clock()

    def on_first_token(self) -> None:
        if self.first_token_time is None:
            self.first_token_time = self._clock()

    def count_decoded(self, n: int = 1) -> None:
        self.decode_tokens += n

    def snapshot(self, now: float | None = None) -> MetricsSnapshot:
        if now is None:
            now = self._clock()

        start = self.prefill_start
        first = self.first_token_time
        ttft = (first - start) * _MS if first is not None and start is not None else 0.0
        prefill = (self.decode_start - start) * _MS if self.decode_start is not None and start is not None else 0.0
        decode = (now - first) * _MS if first is not None else 0.0

        return MetricsSnapshot(
            ttft_ms=ttft,
            prefill_latency_ms=prefill,
            decode_latency_ms=decode,
            prefill_tokens=self.prefill_tokens,
            decode_tokens=self.decode_tokens,
        )


@dataclass(frozen=True)
class TrialStats:
    """Mean and sample standard deviation over repeated trials."""

    mean: float
    std: float
    n: int

    @classmethod
    def from_samples(cls, samples: Sequence[float]) -> "TrialStats":
        n = len(samples)
        if n == 0:
            return cls(mean=0.0, std=0.0, n=0)

        mean = sum(samples) / n
        if n == 1:
            return cls(mean=mean, std=0.0, n=1)

        sum_sq = sum(x * x for x in samples)
        var = sum_sq / (n - 1) - mean * mean * n / (n - 1)
        # Rounding can push a zero variance slightly negative.
        return cls(mean=mean, std=math.sqrt(max(var, 0.0)), n=n)

    def format(self, digits: int = 2) -> str:
        return f"{self.mean:.{digits}f} ± {self.std:.{digits}f}"


def _rating(tokens_per_s: float) -> str:
    if tokens_per_s > 50:
        return "Excellent"
    if tokens_per_s > 25:
        return "Great"
    if tokens_per_s > 15:
        return "Good"
    if tokens_per_s > 8:
        return "Fair"
    return "Needs Optimization"


@dataclass(frozen=True)
class PerformanceReport:
    """Derived figures for one generation, ready for display."""

    snapshot: MetricsSnapshot
    model_size_bytes: int = 0
    model_params: int = 0
    backend: str = "unknown"

    @classmethod
    def from_snapshot(
        cls,
        snapshot: MetricsSnapshot,
        *,
        model_size_bytes: int = 0,
        model_params: int = 0,
        backend: str = "unknown",
    ) -> "PerformanceReport":
        return cls(snapshot=snapshot, model_size_bytes=model_size_bytes, model_params=model_params, backend=backend)

    @property
    def overall_tokens_per_s(self) -> float:
        s = self.snapshot
        if s.total_tokens > 0 and s.total_latency_ms > 0:
            return s.total_tokens / (s.total_latency_ms / _MS)
        return 0.0

    @property
    def responsiveness(self) -> float:
        """1000 / TTFT(ms); higher is better."""
        if self.snapshot.ttft_ms > 0:
            return 1000.0 / self.snapshot.ttft_ms
        return 0.0

    @property
    def efficiency(self) -> float:
        """Overall tokens/s per GiB of model."""
        size_gib = self.model_size_bytes / _GIB
        if size_gib > 0:
            return self.overall_tokens_per_s / size_gib
        return 0.0

    @property
    def rating(self) -> str:
        return _rating(self.overall_tokens_per_s)

    def to_dict(self) -> dict[str, float | int | str]:
        out: dict[str, float | int | str] = dict(self.snapshot.to_dict())
        out.update(
            {
                "total_tokens": self.snapshot.total_tokens,
                "total_latency_ms": self.snapshot.total_latency_ms,
                "overall_tokens_per_s": self.overall_tokens_per_s,
                "responsiveness": self.responsiveness,
                "efficiency": self.efficiency,
                "rating": self.rating,
                "backend": self.backend,
            }
        )
        return out

    def format(self) -> str:
        s = self.snapshot
        lines = [
            "BENCHMARK REPORT",
            "=" * 50,
            "",
            "Model:",
            f"   Size: {self.model_size_bytes / _GIB:.2f} GiB",
            f"   Parameters: {self.model_params / 1e9:.2f} B",
            f"   Backend: {self.backend}",
            "",
            f"Time to First Token (TTFT): {s.ttft_ms:.2f}ms",
            f"Responsiveness Score: {self.responsiveness:.1f}",
            "",
            "Prefill:",
            f"   Latency: {s.prefill_latency_ms:.2f}ms",
            f"   Tokens: {s.prefill_tokens}",
            f"   Speed: {s.prefill_tokens_per_s:.2f} t/s",
            "",
            "Decode:",
            f"   Latency: {s.decode_latency_ms:.2f}ms",
            f"   Tokens: {s.decode_tokens}",
            f"   Speed: {s.decode_tokens_per_s:.2f} t/s",
            "",
            "Overall:",
            f"   Total Tokens: {s.total_tokens}",
            f"   Total Time: {s.total_latency_ms:.2f}ms",
            f"   Average Speed: {self.overall_tokens_per_s:.2f} t/s",
            f"   Efficiency: {self.efficiency:.2f} t/s/GiB",
            "",
            f"Rating: {self.rating}",
        ]
        return "\n".join(lines)


@dataclass(frozen=True)
class BenchReport:
    """Prompt-processing (pp) and text-generation (tg) throughput over `nr` trials."""

    model_description: str
    model_size_bytes: int
    model_params: int
    backend: str
    pp: int
    tg: int
    pl: int
    pp_stats: TrialStats
    tg_stats: TrialStats

    def to_dict(self) -> dict[str, object]:
        return {
            "model": self.model_description,
            "model_size_bytes": self.model_size_bytes,
            "model_params": self.model_params,
            "backend": self.backend,
            "pp": self.pp,
            "tg": self.tg,
            "pl": self.pl,
            "pp_tokens_per_s": {"mean": self.pp_stats.mean, "std": self.pp_stats.std, "n": self.pp_stats.n},
            "tg_tokens_per_s": {"mean": self.tg_stats.mean, "std": self.tg_stats.std, "n": self.tg_stats.n},
        }

    def to_markdown(self) -> str:
        size = f"{self.model_size_bytes / _GIB:.2f} GiB"
        params = f"{self.model_params / 1e9:.2f} B"
        head = f"| {self.model_description} | {size} | {params} | {self.backend} "
        return "\n".join(
            [
                "| model | size | params | backend | test | t/s |",
                "| --- | --- | --- | --- | --- | --- |",
                head + f"| pp {self.pp} | {self.pp_stats.format()} |",
                head + f"| tg {self.tg} | {self.tg_stats.format()} |",
            ]
        ) + "\n"
