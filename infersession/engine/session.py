"""Two-phase inference session (prefill, then one token per step).

This module provides the core, reusable state machine:
- prompt tokenization and context fitting
- batch buffer management for every decode call
- byte-to-text assembly and stop-string clipping
- phase timing for TTFT / throughput metrics

It deliberately contains no HTTP code and no model-family heuristics.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterator, Sequence

from .backends.base import BaseBackend
from .batch import BatchBuffer
from .config import SessionConfig
from .context_fit import FitResult, fit_chat_prompt, fit_completion_prompt
from .errors import DecodeFailure, InitializationFailure, InvalidSessionState
from .metrics import BenchReport, MetricsSnapshot, MetricsTracker, PerformanceReport, TrialStats
from .registry import PromptTemplate
from .stop import StopMatcher
from .types import FinishReason, ModelInfo, SessionState, StepResult
from .utf8 import Utf8Assembler

logger = logging.getLogger(__name__)


class InferenceSession:
    """Single-context generation session.

    Thread-safety:
        The backend is not reentrant. Every public method that touches the
        backend or session state holds one lock (single-flight), so callers
        on different threads are serialized. There is no hard cancel: a host
        stops a generation by no longer calling `step()`.
    """

    def __init__(
        self,
        backend: BaseBackend,
        stop_strings: Sequence[str] = (),
        *,
        config: SessionConfig | None = None,
        template: PromptTemplate | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._backend = backend
        self._config = config or SessionConfig()
        self._config.validate()
        self._template = template
        self._stop_strings = tuple(stop_strings)
        self._clock = clock
        self._lock = threading.Lock()

        self._batch = BatchBuffer(self._config.initial_batch_capacity, self._config.initial_lanes)
        self._metrics = MetricsTracker(clock)
        self._assembler = Utf8Assembler()
        self._stop = StopMatcher(self._stop_strings)

        self._state = SessionState.IDLE
        self._generation_limit = self._config.default_max_new_tokens
        self._position = 0
        self._decoded_count = 0
        self._logits_index = 0
        self._prompt_token_ids: list[int] = []
        self._generated_token_ids: list[int] = []
        self._finish_reason: FinishReason | None = None
        self._last_fit: FitResult | None = None

    @classmethod
    def create(
        cls,
        backend: BaseBackend,
        stop_strings: Sequence[str] = (),
        *,
        config: SessionConfig | None = None,
        template: PromptTemplate | None = None,
    ) -> "InferenceSession":
        """Build a session on an already-constructed backend.

        Raises:
            InitializationFailure: the backend reports no usable context window.
        """
        try:
            n_ctx = int(backend.context_window_size())
        except Exception as exc:
            raise InitializationFailure(f"Backend context is not usable: {exc}") from exc
        if n_ctx <= 0:
            raise InitializationFailure(f"Backend context window must be > 0, got {n_ctx}")
        return cls(backend, stop_strings, config=config, template=template)

    # -------------------------------------------------------------------------
    # Read-only state
    # -------------------------------------------------------------------------

    @property
    def backend(self) -> BaseBackend:
        return self._backend

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def stop_strings(self) -> tuple[str, ...]:
        return self._stop_strings

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_done(self) -> bool:
        return self._state in (SessionState.DONE, SessionState.FAILED)

    @property
    def finish_reason(self) -> FinishReason | None:
        return self._finish_reason

    @property
    def generation_limit(self) -> int:
        return self._generation_limit

    @property
    def position(self) -> int:
        return self._position

    @property
    def decoded_count(self) -> int:
        return self._decoded_count

    @property
    def output_text(self) -> str:
        return self._stop.text

    @property
    def prompt_token_ids(self) -> list[int]:
        return list(self._prompt_token_ids)

    @property
    def generated_token_ids(self) -> list[int]:
        return list(self._generated_token_ids)

    @property
    def last_fit(self) -> FitResult | None:
        return self._last_fit

    @property
    def batch(self) -> BatchBuffer:
        return self._batch

    def info(self) -> dict[str, Any]:
        """Session state summary for hosts."""
        return {
            "state": self._state.value,
            "position": self._position,
            "decoded_count": self._decoded_count,
            "generation_limit": self._generation_limit,
            "finish_reason": self._finish_reason,
            "prompt_tokens": len(self._prompt_token_ids),
            "stop_strings": list(self._stop_strings),
            "batch_capacity": self._batch.capacity,
            "batch_lanes": self._batch.max_lanes,
        }

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def init_prefill(
        self,
        user: str,
        *,
        system: str | None = None,
        max_new_tokens: int | None = None,
        max_user_tokens: int | None = None,
    ) -> FitResult:
        """Tokenize, fit, and decode the prompt in one batch.

        With neither `system` nor a template the prompt is treated as a single
        completion string. Otherwise the system block is kept whole and only
        the user block is trimmed.

        Raises:
            ValueError: the prompt tokenizes to nothing.
            DecodeFailure: the backend rejected the prefill batch.
        """
        with self._lock:
            limit = max(1, int(max_new_tokens if max_new_tokens is not None else self._config.default_max_new_tokens))
            cap = max_user_tokens if max_user_tokens is not None else self._config.max_user_tokens
            n_ctx = int(self._backend.context_window_size())

            if system is None and self._template is None:
                tokens = self._backend.tokenize(user, True)
                fit = fit_completion_prompt(n_ctx, tokens, limit)
            else:
                if self._template is not None:
                    sys_block, user_block = self._template.split(user, system)
                else:
                    sys_block, user_block = system or "", user
                sys_tok = self._backend.tokenize(sys_block, True)
                user_tok = self._backend.tokenize(user_block, False)
                fit = fit_chat_prompt(n_ctx, sys_tok, user_tok, limit, max_user_tokens=cap)

            if not fit.tokens:
                raise ValueError("Prompt produced no tokens.")

            self._reset_generation()
            self._generation_limit = limit
            self._prompt_token_ids = list(fit.tokens)
            self._last_fit = fit

            self._metrics.begin_prefill(len(fit.tokens))
            self._state = SessionState.PREFILLING
            logger.debug(
                "prefill: n_len=%d n_ctx=%d prefill_tokens=%d reserve=%d",
                limit,
                n_ctx,
                len(fit.tokens),
                fit.reserve,
            )

            # The whole prompt goes through one decode call.
            self._batch.ensure_capacity(len(fit.tokens), 1)
            self._batch.clear()
            last = len(fit.tokens) - 1
            for i, token_id in enumerate(fit.tokens):
                self._batch.add(token_id, i, (0,), i == last)

            self._decode("prefill", pending_text="")

            self._position = len(fit.tokens)
            self._logits_index = last
            self._metrics.end_prefill()
            self._state = SessionState.DECODING
            return fit

    def step(self) -> StepResult:
        """Sample one token and advance the session.

        Returns:
            The text increment (possibly empty while bytes are buffered) and
            whether the generation is finished.

        Raises:
            InvalidSessionState: the session is not decoding.
            DecodeFailure: the backend failed; output so far is attached.
        """
        with self._lock:
            if self._state is not SessionState.DECODING:
                raise InvalidSessionState(f"step() requires state 'decoding', got {self._state.value!r}")

            self._metrics.on_first_token()
            token_id = self._sample()

            if self._position >= self._backend.context_window_size():
                logger.info("stopped: context full (position=%d)", self._position)
                return self._finish("context_full", "")

            if self._backend.is_end_of_generation(token_id):
                return self._finish("stop", "")

            piece = self._assembler.push(self._backend.token_to_bytes(token_id))
            self._generated_token_ids.append(token_id)
            self._decoded_count += 1
            self._metrics.count_decoded()

            limit_hit = self._decoded_count >= self._generation_limit
            if limit_hit and self._config.flush_on_finish:
                piece += self._assembler.flush()

            text = self._stop.feed(piece)
            if self._stop.matched:
                logger.info("stopped due to stop string: %r", self._stop.matched_stop)
                return self._finish("length" if limit_hit else "stop_sequence", text)
            if limit_hit:
                return self._finish("length", text)

            # One new token per decode call.
            self._batch.ensure_capacity(1, 1)
            self._batch.clear()
            self._batch.add(token_id, self._position, (0,), True)
            self._decode("decode", pending_text=text)

            self._position += 1
            self._logits_index = 0
            return StepResult(text=text)

    def generate(
        self,
        user: str,
        *,
        system: str | None = None,
        max_new_tokens: int | None = None,
        max_user_tokens: int | None = None,
    ) -> Iterator[StepResult]:
        """Prefill, then yield step results until the session is done.

        The lock is released between steps; closing the iterator early simply
        stops the generation.
        """
        self.init_prefill(user, system=system, max_new_tokens=max_new_tokens, max_user_tokens=max_user_tokens)
        while True:
            result = self.step()
            yield result
            if result.done:
                return

    def clear(self) -> None:
        """Reset the session and purge backend memory. Buffers stay allocated."""
        with self._lock:
            self._reset_generation()
            self._metrics.reset()
            self._backend.clear_memory(True)
            self._state = SessionState.IDLE

    # -------------------------------------------------------------------------
    # Metrics / model queries
    # -------------------------------------------------------------------------

    def metrics_snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return self._metrics.snapshot(self._clock())

    def performance_report(self) -> PerformanceReport:
        with self._lock:
            snapshot = self._metrics.snapshot(self._clock())
            return PerformanceReport.from_snapshot(
                snapshot,
                model_size_bytes=self._backend.model_size_bytes(),
                model_params=self._backend.model_param_count(),
                backend=self._backend.backend_name,
            )

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            description=self._backend.model_description(),
            size_bytes=self._backend.model_size_bytes(),
            param_count=self._backend.model_param_count(),
            backend=self._backend.backend_name,
            context_window=self._backend.context_window_size(),
        )

    def model_size_bytes(self) -> int:
        return self._backend.model_size_bytes()

    def model_param_count(self) -> int:
        return self._backend.model_param_count()

    # -------------------------------------------------------------------------
    # Throughput benchmark
    # -------------------------------------------------------------------------

    def bench(self, pp: int, tg: int, pl: int = 1, nr: int = 1) -> BenchReport:
        """Measure raw prompt-processing and generation throughput.

        Each trial decodes `pp` dummy tokens in one batch, then `tg` steps of
        `pl` parallel lanes. Backend memory is cleared around every phase and
        the session is left IDLE.

        Args:
            pp: Prompt tokens per trial.
            tg: Generation steps per trial.
            pl: Parallel lanes per generation step.
            nr: Number of trials.
        """
        if pp <= 0 or tg <= 0 or pl <= 0 or nr <= 0:
            raise ValueError("pp, tg, pl and nr must all be > 0.")

        with self._lock:
            pp_samples: list[float] = []
            tg_samples: list[float] = []

            try:
                for _ in range(nr):
                    self._batch.ensure_capacity(pp, 1)
                    self._batch.clear()
                    for i in range(pp):
                        self._batch.add(0, i, (0,), False)
                    self._batch.set_logits(pp - 1)

                    self._backend.clear_memory(False)

                    t_pp_start = self._clock()
                    self._bench_decode("prompt")
                    self._backend.synchronize()
                    t_pp_end = self._clock()

                    self._backend.clear_memory(False)

                    t_tg_start = self._clock()
                    for i in range(tg):
                        self._batch.ensure_capacity(pl, pl)
                        self._batch.clear()
                        for j in range(pl):
                            self._batch.add(0, i, (j,), True)
                        self._bench_decode("text generation")
                        self._backend.synchronize()
                    t_tg_end = self._clock()

                    self._backend.clear_memory(False)

                    t_pp = t_pp_end - t_pp_start
                    t_tg = t_tg_end - t_tg_start
                    speed_pp = pp / t_pp if t_pp > 0 else 0.0
                    speed_tg = pl * tg / t_tg if t_tg > 0 else 0.0
                    pp_samples.append(speed_pp)
                    tg_samples.append(speed_tg)
                    logger.info("pp %.2f t/s, tg %.2f t/s", speed_pp, speed_tg)
            finally:
                # Backend memory was cleared for the trials; any prior generation is gone.
                self._reset_generation()
                self._metrics.reset()
                self._state = SessionState.IDLE

            return BenchReport(
                model_description=self._backend.model_description(),
                model_size_bytes=self._backend.model_size_bytes(),
                model_params=self._backend.model_param_count(),
                backend=self._backend.backend_name,
                pp=pp,
                tg=tg,
                pl=pl,
                pp_stats=TrialStats.from_samples(pp_samples),
                tg_stats=TrialStats.from_samples(tg_samples),
            )

    # -------------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # -------------------------------------------------------------------------

    def _reset_generation(self) -> None:
        self._assembler.reset()
        self._stop.reset()
        self._position = 0
        self._decoded_count = 0
        self._logits_index = 0
        self._prompt_token_ids = []
        self._generated_token_ids = []
        self._finish_reason = None
        self._last_fit = None

    def _sample(self) -> int:
        try:
            return int(self._backend.sample_next(self._logits_index))
        except Exception as exc:
            self._state = SessionState.FAILED
            logger.error("sampling failed at position %d: %s", self._position, exc)
            raise DecodeFailure(
                f"Sampling failed: {exc}", phase="sample", output_text=self._stop.text
            ) from exc

    def _decode(self, phase: str, *, pending_text: str) -> None:
        """Issue one decode call; on failure mark the session FAILED and raise."""
        try:
            ok = self._backend.decode(self._batch.slots)
        except Exception as exc:
            self._state = SessionState.FAILED
            logger.error("%s decode raised at position %d: %s", phase, self._position, exc)
            raise DecodeFailure(
                f"{phase} decode failed: {exc}", phase=phase, output_text=self._stop.text, text=pending_text
            ) from exc

        if not ok:
            self._state = SessionState.FAILED
            logger.error("%s decode failed at position %d", phase, self._position)
            raise DecodeFailure(
                f"{phase} decode failed", phase=phase, output_text=self._stop.text, text=pending_text
            )

    def _bench_decode(self, label: str) -> None:
        if not self._backend.decode(self._batch.slots):
            logger.error("decode failed during %s benchmark", label)

    def _finish(self, reason: FinishReason, text: str) -> StepResult:
        if self._config.flush_on_finish and not self._stop.matched:
            text += self._stop.feed(self._assembler.flush())
        else:
            self._assembler.reset()
        self._state = SessionState.DONE
        self._finish_reason = reason
        logger.debug("generation finished: reason=%s decoded=%d", reason, self._decoded_count)
        return StepResult(text=text, done=True, finish_reason=reason)

