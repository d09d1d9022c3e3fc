"""
infersession - Two-phase LLM inference sessions with latency metrics.

A session tokenizes and fits a prompt into the model's context window,
prefills it in one batch, then decodes one token per step while assembling
UTF-8 text, clipping at stop strings, and timing every phase.

Quick Start:
    from infersession import BackendConfig, InferenceSession, get_model_profile
    from infersession.engine.backends.transformers_backend import TransformersBackend

    backend = TransformersBackend(BackendConfig(n_ctx=2048))
    backend.load("Qwen/Qwen2.5-0.5B-Instruct")
    profile = get_model_profile("Qwen/Qwen2.5-0.5B-Instruct")
    session = InferenceSession.create(backend, profile.stop_strings, template=profile.template)

    for result in session.generate("Explain KV caches briefly."):
        print(result.text, end="", flush=True)
    print(session.performance_report().format())

Submodules:
    - infersession.engine.session: InferenceSession
    - infersession.engine.backends: Backend contract and implementations
    - infersession.engine.metrics: Metrics, trial statistics, reports
    - infersession.engine.registry: Model-family profiles
    - infersession.engine.benchmark: Prompt-bank benchmark harness
"""

from infersession._version import __version__

from infersession.engine.backends.base import BaseBackend
from infersession.engine.batch import BatchBuffer, BatchSlot
from infersession.engine.config import BackendConfig, SessionConfig
from infersession.engine.context_fit import FitResult, fit_chat_prompt, fit_completion_prompt
from infersession.engine.errors import (
    CapacityExceeded,
    DecodeFailure,
    InitializationFailure,
    InvalidSessionState,
)
from infersession.engine.metrics import (
    BenchReport,
    MetricsSnapshot,
    MetricsTracker,
    PerformanceReport,
    TrialStats,
)
from infersession.engine.registry import (
    DEFAULT_SYSTEM_PROMPT,
    ModelProfile,
    PromptTemplate,
    get_model_profile,
    list_model_families,
    register_family,
)
from infersession.engine.session import InferenceSession
from infersession.engine.stop import StopMatcher
from infersession.engine.types import FinishReason, ModelInfo, SessionState, StepResult
from infersession.engine.utf8 import Utf8Assembler

# Runtime utilities
from infersession.runtime import (
    is_cuda_available,
    is_torch_available,
    is_transformers_available,
)

__all__ = [
    # Version
    "__version__",
    # Session
    "InferenceSession",
    "SessionState",
    "StepResult",
    "FinishReason",
    "ModelInfo",
    # Components
    "BatchBuffer",
    "BatchSlot",
    "FitResult",
    "fit_chat_prompt",
    "fit_completion_prompt",
    "Utf8Assembler",
    "StopMatcher",
    # Metrics
    "MetricsTracker",
    "MetricsSnapshot",
    "PerformanceReport",
    "TrialStats",
    "BenchReport",
    # Config / backends
    "SessionConfig",
    "BackendConfig",
    "BaseBackend",
    # Registry
    "DEFAULT_SYSTEM_PROMPT",
    "ModelProfile",
    "PromptTemplate",
    "get_model_profile",
    "list_model_families",
    "register_family",
    # Errors
    "InitializationFailure",
    "DecodeFailure",
    "CapacityExceeded",
    "InvalidSessionState",
    # Runtime
    "is_cuda_available",
    "is_torch_available",
    "is_transformers_available",
]
