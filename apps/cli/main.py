"""`infersession` CLI: run completions and benchmarks against a local model.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.output import fmt_float, format_table, print_json
from apps.server.main import add_model_args, build_session, configure_logging
from infersession.engine.benchmark import load_prompt_bank, run_prompt_benchmark, save_csv
from infersession.engine.errors import DecodeFailure, InitializationFailure

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="infersession", description="Inference session CLI")
    sub = p.add_subparsers(dest="command", required=True)

    complete_p = sub.add_parser("complete", help="Generate a completion for one prompt")
    add_model_args(complete_p)
    complete_p.add_argument("prompt", help="User prompt text")
    complete_p.add_argument("--system", default=None, help="System prompt (default: built-in)")
    complete_p.add_argument("--max-tokens", type=int, default=512, help="Max new tokens (default: 512)")
    complete_p.add_argument("--report", action="store_true", help="Print the performance report afterwards")
    complete_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    bench_p = sub.add_parser("bench", help="Measure prompt-processing / generation throughput")
    add_model_args(bench_p)
    bench_p.add_argument("--pp", type=int, default=512, help="Prompt tokens per trial (default: 512)")
    bench_p.add_argument("--tg", type=int, default=128, help="Generated tokens per trial (default: 128)")
    bench_p.add_argument("--pl", type=int, default=1, help="Parallel lanes (default: 1)")
    bench_p.add_argument("--nr", type=int, default=1, help="Number of trials (default: 1)")
    bench_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    pb_p = sub.add_parser("prompt-bench", help="Run a prompt bank and export per-prompt metrics")
    add_model_args(pb_p)
    pb_p.add_argument("--prompts", default=None, help="JSON file with a list of prompts (default: built-in bank)")
    pb_p.add_argument("--max-tokens", type=int, default=100, help="Max new tokens per prompt (default: 100)")
    pb_p.add_argument("--start", type=int, default=0, help="First prompt index (default: 0)")
    pb_p.add_argument("--end", type=int, default=None, help="Stop before this prompt index")
    pb_p.add_argument("--csv", default=None, help="Write results as CSV to this path")
    pb_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    return p


def _cmd_complete(args: argparse.Namespace) -> int:
    session = build_session(args)
    stream = not args.json
    finish_reason = None
    try:
        for result in session.generate(args.prompt, system=args.system, max_new_tokens=args.max_tokens):
            if stream and result.text:
                sys.stdout.write(result.text)
                sys.stdout.flush()
            if result.done:
                finish_reason = result.finish_reason
    except DecodeFailure as exc:
        if stream:
            sys.stdout.write("\n")
        print(f"error: {exc}", file=sys.stderr)
        return 1

    report = session.performance_report()
    if args.json:
        print_json({"text": session.output_text, "finish_reason": finish_reason, "metrics": report.to_dict()})
        return 0

    sys.stdout.write("\n")
    if args.report:
        print()
        print(report.format())
    return 0


def _cmd_bench(args: argparse.Namespace) -> int:
    session = build_session(args)
    report = session.bench(args.pp, args.tg, args.pl, args.nr)
    if args.json:
        print_json(report.to_dict())
    else:
        print(report.to_markdown(), end="")
    return 0


def _cmd_prompt_bench(args: argparse.Namespace) -> int:
    prompts = load_prompt_bank(args.prompts)
    session = build_session(args)

    def on_result(result, done: int, total: int) -> None:
        logger.info(
            "[%d/%d] prompt %d: ttft=%.1fms decode=%.1f t/s",
            done,
            total,
            result.prompt_index,
            result.metrics.ttft_ms,
            result.metrics.decode_tokens_per_s,
        )

    results = run_prompt_benchmark(
        session,
        prompts,
        max_tokens=args.max_tokens,
        start=args.start,
        end=args.end,
        on_result=on_result,
    )

    if args.csv:
        save_csv(results, args.csv, total_prompts=len(prompts))

    if args.json:
        print_json(
            [
                {"index": r.prompt_index, "prompt": r.prompt, "text": r.generated_text, **r.metrics.to_dict()}
                for r in results
            ]
        )
        return 0

    rows = [
        [
            str(r.prompt_index),
            fmt_float(r.metrics.ttft_ms, 1),
            str(r.metrics.prefill_tokens),
            fmt_float(r.metrics.prefill_tokens_per_s),
            str(r.metrics.decode_tokens),
            fmt_float(r.metrics.decode_tokens_per_s),
        ]
        for r in results
    ]
    print(format_table(["idx", "ttft_ms", "prefill", "prefill_t/s", "decode", "decode_t/s"], rows))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "complete":
            return _cmd_complete(args)
        if args.command == "bench":
            return _cmd_bench(args)
        if args.command == "prompt-bench":
            return _cmd_prompt_bench(args)
    except InitializationFailure as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
