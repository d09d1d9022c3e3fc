"""Inference session server entrypoint (FastAPI + uvicorn).

Example:
    python -m apps.server.main --model Qwen/Qwen2.5-0.5B-Instruct --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

import argparse
import logging
import os

from infersession.engine.backends.transformers_backend import TransformersBackend
from infersession.engine.config import BackendConfig, SessionConfig
from infersession.engine.registry import get_model_profile
from infersession.engine.session import InferenceSession

logger = logging.getLogger(__name__)


def add_model_args(p: argparse.ArgumentParser) -> None:
    """Flags shared by every entrypoint that loads a model."""
    p.add_argument("--model", required=True, help="Model path or HF repo id")
    p.add_argument("--device", default="auto", help="Device: auto|cpu|cuda|mps (default: auto)")
    p.add_argument("--dtype", default="float32", help="Torch dtype: float16|bfloat16|float32 (default: float32)")
    p.add_argument("--n-ctx", type=int, default=1024, help="Context window in tokens (default: 1024)")
    p.add_argument("--n-batch", type=int, default=256, help="Max tokens per forward pass (default: 256)")
    p.add_argument("--temperature", type=float, default=0.4, help="Sampling temperature; 0 = greedy (default: 0.4)")
    p.add_argument("--seed", type=int, default=1234, help="Sampling seed (default: 1234)")
    p.add_argument(
        "--max-user-tokens",
        type=int,
        default=None,
        help="Hard cap on user prompt tokens (keeps the tail)",
    )
    p.add_argument(
        "--raw",
        action="store_true",
        help="Treat prompts as plain completions (no chat template)",
    )
    p.add_argument("--trust-remote-code", action="store_true")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_session(args: argparse.Namespace) -> InferenceSession:
    """Load the backend and wrap it in a session with the model's stop strings."""
    backend_cfg = BackendConfig(
        n_ctx=args.n_ctx,
        n_batch=args.n_batch,
        temperature=args.temperature,
        seed=args.seed,
        device=args.device,
        dtype=args.dtype,
    )
    session_cfg = SessionConfig(max_user_tokens=args.max_user_tokens)

    backend = TransformersBackend(backend_cfg)
    logger.info("loading model %r (device=%s dtype=%s)", args.model, args.device, args.dtype)
    backend.load(args.model, trust_remote_code=bool(args.trust_remote_code))

    profile = get_model_profile(args.model)
    template = None if args.raw else profile.template
    return InferenceSession.create(backend, profile.stop_strings, config=session_cfg, template=template)


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Inference session server")
    add_model_args(p)
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    p.add_argument(
        "--http-max-completion-tokens",
        type=int,
        default=0,
        help="Reject requests with max_tokens above this cap (0 = unlimited)",
    )
    p.add_argument(
        "--warmup",
        action="store_true",
        help="Run a short throughput bench after model load",
    )
    return p.parse_args()


def main() -> None:
    args = _parse_args()
    configure_logging(args.log_level)

    session = build_session(args)
    logger.info("model loaded: %s", session.model_info().description)

    if args.warmup:
        report = session.bench(pp=min(32, args.n_ctx), tg=4)
        logger.info("warmup done: pp %s t/s, tg %s t/s", report.pp_stats.format(), report.tg_stats.format())

    from apps.server.app import create_app

    model_id = os.path.basename(args.model.rstrip("/")) or "infersession"
    app = create_app(
        session=session,
        model_id=model_id,
        http_max_completion_tokens=None
        if args.http_max_completion_tokens <= 0
        else int(args.http_max_completion_tokens),
    )

    import uvicorn

    uvicorn.run(app, host=args.host, port=args.port, log_level=str(args.log_level).lower())


if __name__ == "__main__":
    main()
