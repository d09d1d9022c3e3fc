# Backend-agnostic inference session engine
#
# This package drives a native decoding backend through prefill and
# token-by-token decode, with metrics and stop handling around it.
#
# Key components:
#   - backends/       Decoding backend contract + torch/transformers backend
#   - session.py      InferenceSession state machine
#   - batch.py        Reusable batch buffer for decode calls
#   - context_fit.py  Prompt fitting against the context window
#   - utf8.py         Byte-to-text assembly
#   - stop.py         Stop-string detection and clipping
#   - metrics.py      TTFT / throughput telemetry and trial statistics
#   - registry.py     Model-family stop strings and prompt templates
#   - benchmark.py    Prompt-bank benchmark harness + CSV export
