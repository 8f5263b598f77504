"""Coverage gate evaluation for finished test jobs."""

from __future__ import annotations

import json
import math
import re
from pathlib import Path
from typing import Any, Iterable

from ..processes.utils import strip_ansi
from .models import COVERAGE_METRICS, CoverageSummary, UncoveredLines

_ALL_FILES_PATTERN = re.compile(
    r"^\s*All files\s*\|\s*([0-9.]+)\s*\|\s*([0-9.]+)\s*\|\s*([0-9.]+)\s*\|\s*([0-9.]+)\s*\|",
    re.IGNORECASE,
)
_PYTEST_TOTAL_PATTERN = re.compile(r"^TOTAL(?:\s+\d+)+\s+([0-9.]+)%\s*$")


def _finite(values: dict[str, Any]) -> dict[str, float] | None:
    totals: dict[str, float] = {}
    for metric in COVERAGE_METRICS:
        try:
            number = float(values.get(metric))
        except (TypeError, ValueError):
            return None
        if not math.isfinite(number):
            return None
        totals[metric] = number
    return totals


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def read_coverage_totals(cwd: str | Path | None) -> dict[str, float] | None:
    """Read totals from an Istanbul summary or a coverage.py JSON report under ``cwd``."""

    if cwd is None:
        return None
    base = Path(cwd)

    istanbul = _load_json(base / "coverage" / "coverage-summary.json")
    if isinstance(istanbul, dict) and isinstance(istanbul.get("total"), dict):
        total = istanbul["total"]
        return _finite({metric: (total.get(metric) or {}).get("pct") for metric in COVERAGE_METRICS})

    report = _load_json(base / "coverage.json")
    if isinstance(report, dict) and isinstance(report.get("totals"), dict):
        totals = report["totals"]
        percent = totals.get("percent_covered")
        branches = percent
        if totals.get("num_branches"):
            branches = 100.0 * totals.get("covered_branches", 0) / totals["num_branches"]
        return _finite(
            {"lines": percent, "statements": percent, "functions": percent, "branches": branches}
        )
    return None


def parse_coverage_from_logs(messages: Iterable[str]) -> dict[str, float] | None:
    """Find totals in the ``All files |`` table row or the pytest-cov ``TOTAL`` row."""

    for message in messages:
        for line in strip_ansi(message or "").splitlines():
            line = line.rstrip()
            match = _ALL_FILES_PATTERN.match(line)
            if match:
                totals = _finite(
                    {
                        "statements": match.group(1),
                        "branches": match.group(2),
                        "functions": match.group(3),
                        "lines": match.group(4),
                    }
                )
                if totals:
                    return totals
            match = _PYTEST_TOTAL_PATTERN.match(line)
            if match:
                percent = match.group(1)
                totals = _finite({metric: percent for metric in COVERAGE_METRICS})
                if totals:
                    return totals
    return None


def collect_uncovered_lines(cwd: str | Path | None, *, workspace: str | None) -> list[UncoveredLines]:
    """List uncovered lines per file from ``coverage-final.json`` or ``coverage.json``."""

    if cwd is None:
        return []
    base = Path(cwd)
    found: list[UncoveredLines] = []

    final = _load_json(base / "coverage" / "coverage-final.json")
    if isinstance(final, dict):
        for file_path, entry in sorted(final.items()):
            if not isinstance(entry, dict):
                continue
            statements = entry.get("statementMap") or {}
            counts = entry.get("s") or {}
            lines = sorted(
                {
                    int(statements[key]["start"]["line"])
                    for key, hits in counts.items()
                    if hits == 0 and key in statements
                }
            )
            if lines:
                found.append(
                    UncoveredLines(workspace=workspace, file=_relative(file_path, base), lines=lines)
                )
        return found

    report = _load_json(base / "coverage.json")
    if isinstance(report, dict) and isinstance(report.get("files"), dict):
        for file_path, entry in sorted(report["files"].items()):
            missing = sorted(int(line) for line in (entry or {}).get("missing_lines") or [])
            if missing:
                found.append(
                    UncoveredLines(workspace=workspace, file=_relative(file_path, base), lines=missing)
                )
    return found


def _relative(file_path: str, base: Path) -> str:
    path = Path(file_path)
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return path.as_posix()


def evaluate_coverage_gate(
    totals: dict[str, float] | None,
    *,
    target: float,
    uncovered: list[UncoveredLines] | None = None,
) -> CoverageSummary:
    thresholds = {metric: float(target) for metric in COVERAGE_METRICS}
    if not totals:
        return CoverageSummary(
            totals={},
            thresholds=thresholds,
            passed=False,
            message="Coverage gate failed: coverage summary not found.",
        )

    passed = all(totals.get(metric, 0.0) >= thresholds[metric] for metric in COVERAGE_METRICS)
    message = (
        "Coverage gate passed."
        if passed
        else f"Coverage gate failed: coverage below {target:g}%."
    )
    return CoverageSummary(
        totals=totals,
        thresholds=thresholds,
        uncovered_lines=[] if passed else list(uncovered or []),
        passed=passed,
        message=message,
    )


__all__ = [
    "collect_uncovered_lines",
    "evaluate_coverage_gate",
    "parse_coverage_from_logs",
    "read_coverage_totals",
]
