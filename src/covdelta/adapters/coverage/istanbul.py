"""Istanbul/nyc coverage summarizer for JavaScript/TypeScript projects.

Reads the raw ``coverage-final.json`` that nyc, Jest or Vitest write, remaps
it onto original sources and reduces it to the per-file percentages of
Istanbul's ``json-summary`` report.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from covdelta.adapters.coverage.source_maps import remap_coverage
from covdelta.models.coverage import CoverageMetric, CoverageSummary, FileSummary

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

SUMMARY_FILE_NAME = "coverage-summary.json"

_DEFAULT_REPORT_DIR = Path(".covdelta")

# Keys every Istanbul file-coverage object carries
_REQUIRED_KEYS = ("statementMap", "s")


# ── Errors ───────────────────────────────────────────────────────


class SummarizationError(Exception):
    """Raised when a coverage file cannot be summarized."""


class CoverageFileNotFoundError(SummarizationError):
    """Raised when the coverage file does not exist."""


class CoverageParseError(SummarizationError):
    """Raised when the coverage file is not valid Istanbul JSON."""


# ── Summarizer ───────────────────────────────────────────────────


class IstanbulSummarizer:
    """Summarizes Istanbul JSON coverage into a :class:`CoverageSummary`.

    Empty files and fully covered files are always included; the report never
    skips anything the way ``skipEmpty``/``skipFull`` would.
    """

    def __init__(self, report_dir: Path | str = _DEFAULT_REPORT_DIR, *, remap: bool = True) -> None:
        """Initialize the summarizer.

        Args:
            report_dir: Directory receiving the intermediate json-summary file.
            remap: Apply source-map remapping before summarizing.
        """
        self._report_dir = Path(report_dir)
        self._remap = remap

    @property
    def report_dir(self) -> Path:
        return self._report_dir

    def summarize(self, coverage_file: Path | str) -> CoverageSummary:
        """Load, remap and summarize one coverage file.

        Also writes ``coverage-summary.json`` into the report directory.

        Args:
            coverage_file: Path to the raw Istanbul coverage JSON.

        Returns:
            The per-file summary with its aggregate.

        Raises:
            CoverageFileNotFoundError: If *coverage_file* does not exist.
            CoverageParseError: If the file is not Istanbul coverage JSON.
        """
        path = Path(coverage_file)
        data = load_coverage_data(path)

        if self._remap:
            data = remap_coverage(data)

        summary = CoverageSummary.from_files(
            {
                str(file_data.get("path") or file_path): summarize_file(file_data)
                for file_path, file_data in data.items()
            }
        )
        logger.info(
            "Summarized %d files from %s (lines %.2f%%)",
            len(summary.files),
            path,
            summary.total.lines.pct,
        )

        self._write_report(summary)
        return summary

    def _write_report(self, summary: CoverageSummary) -> Path:
        self._report_dir.mkdir(parents=True, exist_ok=True)
        report_file = self._report_dir / SUMMARY_FILE_NAME
        report_file.write_text(json.dumps(summary.to_json(), indent=2), encoding="utf-8")
        logger.debug("Wrote coverage summary to %s", report_file)
        return report_file


# ── Parsing ──────────────────────────────────────────────────────


def load_coverage_data(coverage_file: Path) -> dict[str, Any]:
    """Read and validate raw Istanbul coverage JSON.

    Istanbul format::

        {
          "/path/to/file.ts": {
            "path": "/path/to/file.ts",
            "statementMap": { "0": {...}, ... },
            "fnMap": { "0": {...}, ... },
            "branchMap": { "0": {...}, ... },
            "s": { "0": 1, "1": 0, ... },
            "f": { "0": 1, ... },
            "b": { "0": [1, 0], ... }
          }
        }
    """
    if not coverage_file.is_file():
        raise CoverageFileNotFoundError(f"Coverage file not found: {coverage_file}")

    try:
        with coverage_file.open(encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise CoverageParseError(f"Invalid JSON in {coverage_file}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise CoverageParseError(f"Cannot read {coverage_file}: {exc}") from exc

    if not isinstance(data, dict):
        raise CoverageParseError(f"{coverage_file} is not an Istanbul coverage map")

    for file_path, file_data in data.items():
        if not isinstance(file_data, dict):
            raise CoverageParseError(f"Coverage entry for {file_path} is not an object")
        for key in _REQUIRED_KEYS:
            if not isinstance(file_data.get(key), dict):
                raise CoverageParseError(f"Coverage entry for {file_path} has no {key!r} map")
        _check_counters(file_path, file_data)

    return data


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_counters(file_path: str, file_data: dict[str, Any]) -> None:
    """Reject hit counters that are not integers (``b`` arms: lists of integers)."""
    for key in ("s", "f", "l"):
        counts = file_data.get(key)
        if counts is None:
            continue
        if not isinstance(counts, dict) or not all(_is_count(v) for v in counts.values()):
            raise CoverageParseError(
                f"Coverage entry for {file_path} has non-integer {key!r} counters"
            )

    branches = file_data.get("b")
    if branches is None:
        return
    if not isinstance(branches, dict) or not all(
        isinstance(arms, list) and all(_is_count(hits) for hits in arms)
        for arms in branches.values()
    ):
        raise CoverageParseError(f"Coverage entry for {file_path} has non-integer 'b' counters")


def summarize_file(data: dict[str, Any]) -> FileSummary:
    """Reduce one Istanbul file-coverage object to its summary."""
    return FileSummary(
        lines=_line_metric(data),
        statements=_counter_metric(data.get("s") or {}, data.get("statementMap") or {}),
        functions=_counter_metric(data.get("f") or {}, data.get("fnMap") or {}),
        branches=_branch_metric(data.get("b") or {}, data.get("branchMap") or {}),
    )


def line_hits(data: dict[str, Any]) -> dict[int, int]:
    """Return hit counts per line number.

    Explicit ``l`` data wins; otherwise each statement counts for its start
    line and a line keeps the highest hit count of its statements.
    """
    explicit = data.get("l")
    if isinstance(explicit, dict) and explicit:
        return {int(line): int(hits) for line, hits in explicit.items()}

    statement_map = data.get("statementMap") or {}
    lines: dict[int, int] = {}
    for stmt_id, count in (data.get("s") or {}).items():
        stmt_info = statement_map.get(stmt_id)
        if not isinstance(stmt_info, dict):
            continue
        line = (stmt_info.get("start") or {}).get("line")
        if line is None:
            continue
        if line not in lines or lines[line] < count:
            lines[line] = int(count)
    return lines


def _line_metric(data: dict[str, Any]) -> CoverageMetric:
    hits = line_hits(data)
    return CoverageMetric(
        total=len(hits),
        covered=sum(1 for count in hits.values() if count > 0),
    )


def _counter_metric(counts: dict[str, Any], meta_map: dict[str, Any]) -> CoverageMetric:
    skipped = sum(
        1
        for item_id in counts
        if isinstance(meta_map.get(item_id), dict) and meta_map[item_id].get("skip")
    )
    return CoverageMetric(
        total=len(counts),
        covered=sum(1 for count in counts.values() if count),
        skipped=skipped,
    )


def _branch_metric(counts: dict[str, Any], branch_map: dict[str, Any]) -> CoverageMetric:
    total = 0
    covered = 0
    skipped = 0
    for branch_id, arms in counts.items():
        if not isinstance(arms, list):
            continue
        locations = (branch_map.get(branch_id) or {}).get("locations") or []
        for index, arm_hits in enumerate(arms):
            total += 1
            if arm_hits:
                covered += 1
            location = locations[index] if index < len(locations) else None
            if isinstance(location, dict) and location.get("skip"):
                skipped += 1
    return CoverageMetric(total=total, covered=covered, skipped=skipped)
