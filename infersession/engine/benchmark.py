"""Prompt-bank benchmark harness.

Runs a list of prompts through one session, collects a MetricsSnapshot per
prompt and exports the results as CSV.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .errors import DecodeFailure
from .metrics import MetricsSnapshot

logger = logging.getLogger(__name__)

_GIB = 1024.0**3

FALLBACK_PROMPTS: tuple[str, ...] = (
    "Write a short story about a robot learning to paint.",
    "Explain quantum computing in simple terms.",
    "Create a recipe for chocolate chip cookies.",
    "What are the benefits of renewable energy?",
    "Describe a day in the life of a medieval knight.",
    "Write a Python function to calculate fibonacci numbers.",
    "What are the main differences between iOS and Android?",
    "Explain the concept of machine learning to a beginner.",
    "Write a haiku about artificial intelligence.",
    "How do neural networks work?",
)

CSV_COLUMNS = (
    "Index",
    "Prompt",
    "Generated_Text",
    "Time_to_First_Token_ms",
    "Prefill_Latency_ms",
    "Decode_Latency_ms",
    "Prefill_Tokens",
    "Decode_Tokens",
    "Total_Tokens",
    "Prefill_Speed_tps",
    "Decode_Speed_tps",
    "Total_Latency_ms",
    "Model_Name",
    "Model_Size",
    "Model_Params",
    "Backend",
    "Timestamp",
)


def load_prompt_bank(path: str | Path | None) -> list[str]:
    """Load a JSON array of prompt strings.

    Falls back to a small built-in bank when the file is missing or malformed.
    """
    if path is not None:
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("Prompt bank %s not found; using fallback prompts", p)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read prompt bank %s (%s); using fallback prompts", p, exc)
        else:
            if isinstance(data, list) and all(isinstance(x, str) for x in data):
                logger.info("Loaded %d prompts from %s", len(data), p)
                return list(data)
            logger.warning("Prompt bank %s is not a JSON list of strings; using fallback prompts", p)
    return list(FALLBACK_PROMPTS)


def _clean_text(text: str) -> str:
    return text.strip().replace("\r", " ").replace("\n", " ")


@dataclass
class BenchmarkResult:
    prompt_index: int
    prompt: str
    generated_text: str
    metrics: MetricsSnapshot
    model_name: str
    model_size_bytes: int
    model_params: int
    backend: str
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def model_size(self) -> str:
        return f"{self.model_size_bytes / _GIB:.2f} GiB"

    @property
    def model_params_str(self) -> str:
        return f"{self.model_params / 1e9:.2f} B"

    def to_row(self) -> list[object]:
        m = self.metrics
        return [
            self.prompt_index,
            self.prompt,
            self.generated_text,
            f"{m.ttft_ms:.2f}",
            f"{m.prefill_latency_ms:.2f}",
            f"{m.decode_latency_ms:.2f}",
            m.prefill_tokens,
            m.decode_tokens,
            m.total_tokens,
            f"{m.prefill_tokens_per_s:.2f}",
            f"{m.decode_tokens_per_s:.2f}",
            f"{m.total_latency_ms:.2f}",
            self.model_name,
            self.model_size,
            self.model_params_str,
            self.backend,
            self.timestamp.isoformat(timespec="seconds"),
        ]


def run_single_prompt(session, prompt: str, index: int, *, max_tokens: int = 100) -> BenchmarkResult | None:
    """Run one prompt from a cleared session. Returns None when skipped."""
    if not prompt.strip():
        logger.warning("Empty prompt at index %d; skipping", index)
        return None

    session.clear()
    started = datetime.now()
    pieces: list[str] = []
    try:
        session.init_prefill(prompt, max_new_tokens=max_tokens)
        # Iteration cap in case the backend never signals completion.
        max_iterations = max_tokens * 2
        iterations = 0
        while not session.is_done and iterations < max_iterations:
            result = session.step()
            pieces.append(result.text)
            iterations += 1
    except DecodeFailure as exc:
        logger.error("Benchmark prompt %d failed during %s: %s", index, exc.phase, exc)
        return None

    info = session.model_info()
    return BenchmarkResult(
        prompt_index=index,
        prompt=prompt[:200],
        generated_text=_clean_text("".join(pieces)),
        metrics=session.metrics_snapshot(),
        model_name=info.description,
        model_size_bytes=info.size_bytes,
        model_params=info.param_count,
        backend=info.backend,
        timestamp=started,
    )


def run_prompt_benchmark(
    session,
    prompts: Sequence[str],
    *,
    max_tokens: int = 100,
    start: int = 0,
    end: int | None = None,
    on_result: Callable[[BenchmarkResult, int, int], None] | None = None,
) -> list[BenchmarkResult]:
    """
    Run prompts[start:end] sequentially through `session`.

    Args:
        session: An InferenceSession.
        prompts: The prompt bank.
        max_tokens: Generation limit per prompt.
        start: First prompt index (inclusive).
        end: Last prompt index (exclusive); defaults to the whole bank.
        on_result: Called as (result, done, total) after each successful prompt.

    Returns:
        One result per prompt that completed; skipped prompts are logged.
    """
    end = len(prompts) if end is None else min(end, len(prompts))
    if start < 0 or start > end:
        raise ValueError(f"Invalid prompt range: {start}-{end}")

    total = end - start
    results: list[BenchmarkResult] = []
    t0 = time.perf_counter()
    for done, index in enumerate(range(start, end), start=1):
        result = run_single_prompt(session, prompts[index], index, max_tokens=max_tokens)
        if result is None:
            continue
        results.append(result)
        if on_result is not None:
            on_result(result, done, total)

    logger.info(
        "Benchmark completed: %d/%d prompts in %.1fs",
        len(results),
        total,
        time.perf_counter() - t0,
    )
    return results


def export_csv(results: Iterable[BenchmarkResult], *, total_prompts: int | None = None) -> str:
    """Render results as CSV with a commented header block."""
    results = list(results)
    buf = io.StringIO()
    buf.write("# Inference Session Benchmark Results\n")
    buf.write(f"# Generated: {datetime.now().isoformat(timespec='seconds')}\n")
    if total_prompts is not None:
        buf.write(f"# Total Prompts Available: {total_prompts}\n")
    buf.write(f"# Results Count: {len(results)}\n")
    buf.write("#\n")

    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    if not results:
        buf.write("# No results available yet\n")
    for result in results:
        writer.writerow(result.to_row())
    return buf.getvalue()


def save_csv(results: Iterable[BenchmarkResult], path: str | Path, *, total_prompts: int | None = None) -> Path:
    p = Path(path)
    p.write_text(export_csv(results, total_prompts=total_prompts), encoding="utf-8")
    logger.info("CSV saved to: %s", p)
    return p
