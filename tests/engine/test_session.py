import threading
import time

import pytest

from infersession.engine.config import SessionConfig
from infersession.engine.errors import DecodeFailure, InitializationFailure, InvalidSessionState
from infersession.engine.registry import DEFAULT_SYSTEM_PROMPT, PromptTemplate
from infersession.engine.session import InferenceSession
from infersession.engine.types import SessionState

BOS = 1


def ids(text):
    return [ord(c) for c in text]


def run_to_end(session, limit=100):
    results = []
    for _ in range(limit):
        r = session.step()
        results.append(r)
        if r.done:
            break
    return results


# -----------------------------------------------------------------------------
# Prefill
# -----------------------------------------------------------------------------


def test_prefill_decodes_whole_prompt_in_one_batch(make_backend):
    backend = make_backend(ids("hi"))
    session = InferenceSession(backend)

    fit = session.init_prefill("ab")

    assert fit.tokens == [BOS, 97, 98]
    assert session.state is SessionState.DECODING
    assert session.position == 3
    assert backend.decode_calls == [
        [(BOS, 0, (0,), False), (97, 1, (0,), False), (98, 2, (0,), True)],
    ]


def test_prefill_grows_batch_for_long_prompts(make_backend):
    backend = make_backend()
    session = InferenceSession(backend, config=SessionConfig(initial_batch_capacity=4))

    session.init_prefill("abcdefghij", max_new_tokens=4)

    assert session.batch.capacity >= 11
    assert len(backend.decode_calls[0]) == 11


def test_template_splits_system_and_user(make_backend):
    backend = make_backend()
    template = PromptTemplate("[{SYSTEM_PROMPT}]{USER_MESSAGE}>")
    session = InferenceSession(backend, template=template)

    session.init_prefill("u", system="S")

    # Only the system block carries the leading marker.
    assert session.prompt_token_ids == [BOS] + ids("[S]") + ids("u>")


def test_template_uses_default_system_prompt(make_backend):
    backend = make_backend()
    session = InferenceSession(backend, template=PromptTemplate("[{SYSTEM_PROMPT}]{USER_MESSAGE}"))

    session.init_prefill("q", max_new_tokens=8)

    text = "".join(chr(t) for t in session.prompt_token_ids[1:])
    assert text == "[" + DEFAULT_SYSTEM_PROMPT + "]q"


def test_user_segment_truncated_to_fit(make_backend):
    backend = make_backend(n_ctx=16)
    session = InferenceSession(backend)

    session.init_prefill("0123456789", system="ab", max_new_tokens=8)

    assert session.prompt_token_ids == [BOS] + ids("ab") + ids("56789")
    assert session.last_fit.dropped == 5


def test_max_user_tokens_cap(make_backend):
    backend = make_backend()
    session = InferenceSession(backend, config=SessionConfig(max_user_tokens=3))

    session.init_prefill("abcdef", system="", max_new_tokens=8)
    assert session.prompt_token_ids == [BOS] + ids("def")

    session.init_prefill("abcdef", system="", max_new_tokens=8, max_user_tokens=2)
    assert session.prompt_token_ids == [BOS] + ids("ef")


def test_empty_prompt_is_rejected(make_backend, monkeypatch):
    backend = make_backend()
    monkeypatch.setattr(backend, "tokenize", lambda text, add_leading_marker: [])
    session = InferenceSession(backend)

    with pytest.raises(ValueError):
        session.init_prefill("x")
    assert session.state is SessionState.IDLE
    assert backend.decode_calls == []


# -----------------------------------------------------------------------------
# Decode loop
# -----------------------------------------------------------------------------


def test_step_emits_text_until_end_of_generation(make_backend):
    backend = make_backend(ids("hi"))
    session = InferenceSession(backend)
    session.init_prefill("ab")

    r1 = session.step()
    assert (r1.text, r1.done) == ("h", False)
    assert backend.decode_calls[1] == [(ord("h"), 3, (0,), True)]

    r2 = session.step()
    assert (r2.text, r2.done) == ("i", False)

    r3 = session.step()
    assert r3.done
    assert r3.text == ""
    assert r3.finish_reason == "stop"

    assert session.state is SessionState.DONE
    assert session.output_text == "hi"
    assert session.generated_token_ids == ids("hi")
    assert session.decoded_count == 2
    assert session.position == 5
    # The prefill logits sit at the last prompt slot, later ones at slot 0.
    assert backend.sample_calls == [2, 0, 0]


def test_generation_limit_finishes_on_last_step(make_backend):
    backend = make_backend(ids("abcdefghij"))
    session = InferenceSession(backend)
    session.init_prefill("x", max_new_tokens=5)

    results = [session.step() for _ in range(5)]

    assert [r.done for r in results] == [False, False, False, False, True]
    assert results[-1].text == "e"
    assert results[-1].finish_reason == "length"
    assert session.output_text == "abcde"
    # No decode is issued for the final token.
    assert len(backend.decode_calls) == 1 + 4

    with pytest.raises(InvalidSessionState):
        session.step()


def test_context_full_on_first_step(make_backend):
    backend = make_backend(ids("abc"), n_ctx=8)
    session = InferenceSession(backend)

    # 8 system chars + leading marker = 9 tokens; system tokens are never dropped.
    session.init_prefill("x", system="abcdefgh", max_new_tokens=4)
    assert len(session.prompt_token_ids) == 9

    r = session.step()
    assert r.done
    assert r.finish_reason == "context_full"
    assert r.text == ""
    assert session.decoded_count == 0


def test_stop_string_clips_output(make_backend):
    pieces = {200: b"hello ", 201: b"wor", 202: b"ld</s>extra"}
    backend = make_backend([200, 201, 202, 203], pieces=pieces)
    session = InferenceSession(backend, ["</s>"])
    session.init_prefill("x")

    results = run_to_end(session)

    assert [r.text for r in results] == ["hello ", "wor", "ld"]
    assert results[-1].finish_reason == "stop_sequence"
    assert session.output_text == "hello world"
    assert len(backend.decode_calls) == 1 + 2


def test_stop_string_on_limit_step_reports_length(make_backend):
    pieces = {200: b"hello ", 201: b"wor", 202: b"ld</s>extra"}
    backend = make_backend([200, 201, 202], pieces=pieces)
    session = InferenceSession(backend, ["</s>"])
    session.init_prefill("x", max_new_tokens=3)

    results = run_to_end(session)

    assert results[-1].finish_reason == "length"
    assert results[-1].text == "ld"
    assert session.output_text == "hello world"


def test_split_utf8_character(make_backend):
    backend = make_backend([300, 301], pieces={300: b"\xc3", 301: b"\xa9"})
    session = InferenceSession(backend)
    session.init_prefill("x")

    r1 = session.step()
    r2 = session.step()
    assert (r1.text, r1.done) == ("", False)
    assert (r2.text, r2.done) == ("é", False)
    assert session.decoded_count == 2


def test_pending_bytes_flushed_at_limit(make_backend):
    backend = make_backend([300], pieces={300: b"\xc3"})
    session = InferenceSession(backend)
    session.init_prefill("x", max_new_tokens=1)

    r = session.step()
    assert r.done
    assert r.text == "\ufffd"


def test_pending_bytes_flushed_at_end_of_generation(make_backend):
    backend = make_backend([300], pieces={300: b"\xc3"})
    session = InferenceSession(backend)
    session.init_prefill("x")

    assert session.step().text == ""
    r = session.step()
    assert r.finish_reason == "stop"
    assert r.text == "\ufffd"


def test_pending_bytes_dropped_without_flush(make_backend):
    backend = make_backend([300], pieces={300: b"\xc3"})
    session = InferenceSession(backend, config=SessionConfig(flush_on_finish=False))
    session.init_prefill("x", max_new_tokens=1)

    r = session.step()
    assert r.done
    assert r.text == ""


def test_immediate_end_of_generation(make_backend):
    session = InferenceSession(make_backend())
    session.init_prefill("x")
    r = session.step()
    assert r.done
    assert r.finish_reason == "stop"
    assert session.output_text == ""


def test_generate_iterates_until_done(make_backend):
    session = InferenceSession(make_backend(ids("hey")))
    out = "".join(r.text for r in session.generate("x", max_new_tokens=10))
    assert out == "hey"
    assert session.is_done


# -----------------------------------------------------------------------------
# Failures and state
# -----------------------------------------------------------------------------


def test_step_before_prefill_is_invalid(make_backend):
    session = InferenceSession(make_backend())
    with pytest.raises(InvalidSessionState):
        session.step()


def test_decode_failure_carries_partial_output(make_backend):
    backend = make_backend(ids("ab"), fail_on_decode=2)
    session = InferenceSession(backend)
    session.init_prefill("x")

    with pytest.raises(DecodeFailure) as ei:
        session.step()

    assert ei.value.phase == "decode"
    assert ei.value.text == "a"
    assert ei.value.output_text == "a"
    assert session.state is SessionState.FAILED
    assert session.is_done

    with pytest.raises(InvalidSessionState):
        session.step()


def test_prefill_exception_is_wrapped(make_backend):
    backend = make_backend(raise_on_decode=1)
    session = InferenceSession(backend)

    with pytest.raises(DecodeFailure) as ei:
        session.init_prefill("x")

    assert ei.value.phase == "prefill"
    assert isinstance(ei.value.__cause__, RuntimeError)
    assert session.state is SessionState.FAILED


def test_clear_resets_session_and_backend(make_backend):
    backend = make_backend(ids("ok"))
    session = InferenceSession(backend)
    list(session.generate("x"))

    session.clear()

    assert session.state is SessionState.IDLE
    assert session.position == 0
    assert session.decoded_count == 0
    assert session.output_text == ""
    assert session.finish_reason is None
    assert backend.clear_calls[-1] is True
    assert session.metrics_snapshot().decode_tokens == 0

    # The session is reusable after clear().
    session.init_prefill("y")
    assert session.state is SessionState.DECODING


def test_create_rejects_unusable_context(make_backend, monkeypatch):
    with pytest.raises(InitializationFailure):
        InferenceSession.create(make_backend(n_ctx=0))

    backend = make_backend()

    def boom():
        raise RuntimeError("no context")

    monkeypatch.setattr(backend, "context_window_size", boom)
    with pytest.raises(InitializationFailure):
        InferenceSession.create(backend)


def test_create_returns_session(make_backend):
    session = InferenceSession.create(make_backend(), ["</s>"])
    assert session.stop_strings == ("</s>",)
    assert session.state is SessionState.IDLE
    assert session.info()["state"] == "idle"


# -----------------------------------------------------------------------------
# Metrics and model queries
# -----------------------------------------------------------------------------


def test_metrics_snapshot_uses_session_clock(make_backend, step_clock):
    session = InferenceSession(make_backend(ids("abc")), clock=step_clock)

    session.init_prefill("ab")  # prefill start t=0, end t=1
    session.step()  # first token t=2
    snap = session.metrics_snapshot()  # now t=3

    assert snap.prefill_latency_ms == pytest.approx(1000.0)
    assert snap.ttft_ms == pytest.approx(2000.0)
    assert snap.decode_latency_ms == pytest.approx(1000.0)
    assert snap.prefill_tokens == 3
    assert snap.decode_tokens == 1


def test_performance_report_and_model_info(make_backend):
    session = InferenceSession(make_backend(ids("a")))
    list(session.generate("x"))

    report = session.performance_report()
    assert report.backend == "fake"
    assert report.model_size_bytes == 2 * 1024**3

    info = session.model_info()
    assert info.description == "fake 0.0B"
    assert info.context_window == 1024
    assert info.params_billions == pytest.approx(1.5)
    assert session.model_size_bytes() == 2 * 1024**3
    assert session.model_param_count() == 1_500_000_000


# -----------------------------------------------------------------------------
# Throughput bench
# -----------------------------------------------------------------------------


def test_bench_batches_and_stats(make_backend, step_clock):
    backend = make_backend()
    session = InferenceSession(backend, clock=step_clock)

    report = session.bench(pp=4, tg=3, pl=2, nr=2)

    assert len(backend.decode_calls) == 2 * (1 + 3)
    assert backend.decode_calls[0] == [(0, i, (0,), i == 3) for i in range(4)]
    assert backend.decode_calls[1] == [(0, 0, (0,), True), (0, 0, (1,), True)]
    assert backend.decode_calls[3] == [(0, 2, (0,), True), (0, 2, (1,), True)]
    assert backend.clear_calls == [False, False, False] * 2
    assert backend.sync_calls == 8

    # Each timed phase spans exactly one clock tick (1 s).
    assert report.pp_stats.n == 2
    assert report.pp_stats.mean == pytest.approx(4.0)
    assert report.tg_stats.mean == pytest.approx(6.0)
    assert report.tg_stats.std == pytest.approx(0.0, abs=1e-6)
    assert (report.pp, report.tg, report.pl) == (4, 3, 2)
    assert report.backend == "fake"
    assert session.state is SessionState.IDLE


def test_bench_continues_after_decode_failure(make_backend):
    backend = make_backend(fail_on_decode=1)
    session = InferenceSession(backend)

    report = session.bench(pp=2, tg=1)

    assert report.pp_stats.n == 1
    assert len(backend.decode_calls) == 2


def test_bench_rejects_non_positive_arguments(make_backend):
    session = InferenceSession(make_backend())
    with pytest.raises(ValueError):
        session.bench(pp=0, tg=1)
    with pytest.raises(ValueError):
        session.bench(pp=1, tg=1, nr=0)


def test_bench_failure_leaves_session_idle(make_backend):
    backend = make_backend(ids("abc"), raise_on_decode=2)
    session = InferenceSession(backend)
    session.init_prefill("hi")
    assert session.state is SessionState.DECODING

    with pytest.raises(RuntimeError):
        session.bench(pp=2, tg=1)

    assert session.state is SessionState.IDLE
    assert session.position == 0
    assert session.prompt_token_ids == []
    with pytest.raises(InvalidSessionState):
        session.step()


# -----------------------------------------------------------------------------
# Single-writer access
# -----------------------------------------------------------------------------


def test_concurrent_callers_never_overlap_in_decode(make_backend):
    class SlowBackend(make_backend):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self.active = 0
            self.max_active = 0
            self._guard = threading.Lock()

        def decode(self, slots):
            with self._guard:
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            time.sleep(0.005)
            with self._guard:
                self.active -= 1
            return super().decode(slots)

    backend = SlowBackend()
    session = InferenceSession(backend)
    errors = []

    def prefill_loop():
        try:
            for _ in range(5):
                session.init_prefill("abc")
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    def bench_loop():
        try:
            for _ in range(3):
                session.bench(pp=2, tg=2)
        except Exception as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [
        threading.Thread(target=prefill_loop),
        threading.Thread(target=prefill_loop),
        threading.Thread(target=bench_loop),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert backend.max_active == 1
    # 10 prefills plus 3 bench trials of one pp decode and two tg decodes.
    assert len(backend.decode_calls) == 10 + 3 * 3
