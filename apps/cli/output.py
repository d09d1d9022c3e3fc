from __future__ import annotations

import json
from typing import Any, Iterable, Sequence


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def fmt_float(value: float, digits: int = 2) -> str:
    if value != value:  # NaN
        return "-"
    return f"{value:.{digits}f}"


def _is_numeric(cell: str) -> bool:
    try:
        float(cell)
    except ValueError:
        return False
    return True


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Plain-text table; columns whose cells are all numeric are right-aligned."""
    body = [[str(c) for c in r[: len(headers)]] for r in rows]
    widths = [len(h) for h in headers]
    numeric = [True] * len(headers)
    for r in body:
        for i, cell in enumerate(r):
            widths[i] = max(widths[i], len(cell))
            if cell != "-" and not _is_numeric(cell):
                numeric[i] = False

    def fmt_row(cols: Sequence[str]) -> str:
        cells = [c.rjust(widths[i]) if numeric[i] else c.ljust(widths[i]) for i, c in enumerate(cols)]
        return "  ".join(cells).rstrip()

    lines = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    lines.extend(fmt_row(r) for r in body)
    return "\n".join(lines)
