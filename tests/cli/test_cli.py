import json

import pytest

import apps.cli.main as cli_main
from apps.cli.main import build_parser
from apps.cli.output import fmt_float, format_table
from infersession.engine.errors import InitializationFailure
from infersession.engine.session import InferenceSession


def _use_session(monkeypatch, backend, stop_strings=()):
    session = InferenceSession(backend, stop_strings)
    monkeypatch.setattr(cli_main, "build_session", lambda args: session)
    return session


def test_parser_complete_defaults():
    args = build_parser().parse_args(["complete", "--model", "m", "hello"])
    assert args.command == "complete"
    assert args.prompt == "hello"
    assert args.max_tokens == 512
    assert args.n_ctx == 1024
    assert args.temperature == pytest.approx(0.4)
    assert args.seed == 1234
    assert args.system is None
    assert not args.raw


def test_parser_bench_and_prompt_bench():
    parser = build_parser()
    args = parser.parse_args(["bench", "--model", "m", "--pp", "64", "--tg", "16", "--pl", "2", "--nr", "3"])
    assert (args.pp, args.tg, args.pl, args.nr) == (64, 16, 2, 3)

    args = parser.parse_args(["prompt-bench", "--model", "m", "--start", "2", "--end", "5", "--csv", "out.csv"])
    assert (args.start, args.end, args.csv) == (2, 5, "out.csv")
    assert args.max_tokens == 100
    assert args.prompts is None


def test_parser_requires_model():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["bench"])


def test_format_table_aligns_numeric_columns():
    out = format_table(["name", "t/s"], [["alpha", "1.50"], ["b", "12.25"]])
    lines = out.splitlines()
    assert lines[0].startswith("name ")
    assert lines[1].startswith("-----")
    assert lines[2] == "alpha   1.50"
    assert lines[3] == "b      12.25"


def test_fmt_float():
    assert fmt_float(3.14159) == "3.14"
    assert fmt_float(2.0, 1) == "2.0"
    assert fmt_float(float("nan")) == "-"


def test_complete_streams_text(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend([ord("h"), ord("i")]))

    assert cli_main.main(["complete", "--model", "m", "hey"]) == 0
    assert capsys.readouterr().out == "hi\n"


def test_complete_json_clips_stop_string(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend([ord(c) for c in "ok</s>x"]), ["</s>"])

    assert cli_main.main(["complete", "--model", "m", "--json", "hey"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["text"] == "ok"
    assert data["finish_reason"] == "stop_sequence"
    assert data["metrics"]["decode_tokens"] >= 2


def test_complete_report(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend([ord("a")]))

    assert cli_main.main(["complete", "--model", "m", "--report", "hey"]) == 0
    assert "BENCHMARK REPORT" in capsys.readouterr().out


def test_complete_decode_failure(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend([ord("a"), ord("b")], fail_on_decode=2))

    assert cli_main.main(["complete", "--model", "m", "hey"]) == 1
    assert "error:" in capsys.readouterr().err


def test_bench_prints_markdown(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend())

    assert cli_main.main(["bench", "--model", "m", "--pp", "8", "--tg", "2"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("| model | size | params | backend | test | t/s |")
    assert "| pp 8 |" in out
    assert "| tg 2 |" in out


def test_bench_invalid_args_exit_code(monkeypatch, capsys, make_backend):
    _use_session(monkeypatch, make_backend())

    assert cli_main.main(["bench", "--model", "m", "--pp", "0"]) == 2
    assert "error:" in capsys.readouterr().err


def test_prompt_bench_writes_csv(monkeypatch, capsys, tmp_path, make_backend):
    _use_session(monkeypatch, make_backend())
    bank = tmp_path / "bank.json"
    bank.write_text(json.dumps(["one", "two", "three"]), encoding="utf-8")
    out_csv = tmp_path / "results.csv"

    rc = cli_main.main(
        ["prompt-bench", "--model", "m", "--prompts", str(bank), "--end", "2", "--csv", str(out_csv)]
    )

    assert rc == 0
    table = capsys.readouterr().out.splitlines()
    assert table[0].split()[0] == "idx"
    assert [line.split()[0] for line in table[2:]] == ["0", "1"]
    text = out_csv.read_text(encoding="utf-8")
    assert "# Total Prompts Available: 3" in text
    assert "# Results Count: 2" in text


def test_load_failure_exit_code(monkeypatch, capsys):
    def boom(args):
        raise InitializationFailure("no such model")

    monkeypatch.setattr(cli_main, "build_session", boom)

    assert cli_main.main(["bench", "--model", "missing"]) == 1
    assert "no such model" in capsys.readouterr().err
