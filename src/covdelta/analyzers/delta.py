"""Coverage delta analysis between a baseline and the current branch.

Compares per-file line coverage, decides the overall verdict and renders the
markdown table published in the check run. Everything here is a pure
function of its arguments.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Collection

    from covdelta.models.coverage import CoverageSummary

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

DEFAULT_EXCLUDED_PREFIXES = ("node_modules", "bpack/runtime/")

BAR_CELLS = 10
BAR_FILLED = "⬛"
BAR_EMPTY = "⬜"

MARKER_OK = "✅"
MARKER_REGRESSED = "❌"

TITLE_DECREASING = "Coverage is decreasing"
TITLE_INCREASING = "Coverage is increasing"
TITLE_NOT_CHANGING = "Coverage is not changing"

TABLE_HEADER = "| | File | Coverage | Delta |"

# Percentages are compared as integers at 2-decimal granularity
_PCT_SCALE = 100
_DELTA_SCALE = 10000


class Verdict(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class DeltaOptions:
    """Options controlling which files are reported and how they are linked."""

    working_directory: str = ""
    """Prefix stripped from absolute paths to form report names."""

    head_url: str = ""
    """Base URL that file names are appended to for links (``<repo>/blob/<sha>``)."""

    excluded_prefixes: tuple[str, ...] = DEFAULT_EXCLUDED_PREFIXES
    """Relative path prefixes never reported (vendored or build-tool files)."""

    changed_files: Collection[str] | None = None
    """When set, only these relative paths are reported."""


@dataclass
class DiffRow:
    """One reported file."""

    name: str
    """Path relative to the working directory."""

    url: str
    """Link to the file at the head commit."""

    coverage_pct: float
    """Current line coverage percentage."""

    file_pct: int
    """Current line percentage x100, truncated."""

    master_pct: int
    """Baseline line percentage x100, truncated (0 when absent)."""

    @property
    def delta(self) -> float:
        """Signed change in percentage points divided by 100."""
        return (self.file_pct - self.master_pct) / _DELTA_SCALE

    @property
    def delta_text(self) -> str:
        return format_delta(self.file_pct, self.master_pct)

    @property
    def regressed(self) -> bool:
        return self.file_pct < self.master_pct

    @property
    def improved(self) -> bool:
        return self.file_pct > self.master_pct

    @property
    def marker(self) -> str:
        return MARKER_REGRESSED if self.regressed else MARKER_OK

    @property
    def bar(self) -> str:
        return render_bar(self.coverage_pct)

    def to_markdown(self) -> str:
        link = f"[{self.name}]({self.url})"
        return (
            f"| {self.marker} | {link} | {self.bar} {format_pct(self.coverage_pct)}% "
            f"| {self.delta_text} |"
        )


@dataclass
class CoverageDelta:
    """Outcome of comparing two coverage summaries."""

    verdict: Verdict
    title: str
    rows: list[DiffRow] = field(default_factory=list)

    @property
    def conclusion(self) -> str:
        """Check-run conclusion string."""
        return self.verdict.value

    @property
    def regressions(self) -> list[DiffRow]:
        return [row for row in self.rows if row.regressed]

    @property
    def table(self) -> str:
        return render_table(self.rows)


# ── Formatting helpers ───────────────────────────────────────────


def truncate_pct(pct: float) -> int:
    """Return ``floor(pct * 100)`` so comparisons avoid float artifacts."""
    return math.floor(pct * _PCT_SCALE)


def format_delta(file_pct: int, master_pct: int) -> str:
    """Format a delta with an explicit sign and at least one decimal digit.

    >>> format_delta(8000, 9000)
    '-0.1'
    >>> format_delta(5000, 5000)
    '+0.0'
    """
    delta = (file_pct - master_pct) / _DELTA_SCALE
    sign = "+" if delta >= 0 else ""
    return f"{sign}{delta!r}"


def format_pct(pct: float) -> str:
    """Render a percentage without a trailing ``.0`` for whole numbers."""
    return f"{pct:g}"


def render_bar(pct: float) -> str:
    """Render a 10-cell decile gauge for a percentage."""
    filled = math.floor(pct / BAR_CELLS)
    return "".join(BAR_FILLED if cell < filled else BAR_EMPTY for cell in range(BAR_CELLS))


def render_table(rows: list[DiffRow]) -> str:
    """Render rows as a markdown table with a header and separator."""
    separator = "".join(char if char in "| " else "-" for char in TABLE_HEADER)
    lines = [TABLE_HEADER, separator]
    lines.extend(row.to_markdown() for row in rows)
    return "\n".join(lines) + "\n"


def relative_name(path: str, working_directory: str) -> str:
    """Strip the working-directory prefix from an absolute path."""
    if not working_directory:
        return path
    prefix = working_directory.rstrip("/" + os.sep) + os.sep
    if path.startswith(prefix):
        return path[len(prefix) :]
    return path


# ── Analysis ─────────────────────────────────────────────────────


def _is_excluded(name: str, options: DeltaOptions) -> bool:
    if any(name.startswith(prefix) for prefix in options.excluded_prefixes):
        return True
    return options.changed_files is not None and name not in options.changed_files


def compute_delta(
    baseline: CoverageSummary | None,
    current: CoverageSummary,
    options: DeltaOptions | None = None,
) -> CoverageDelta:
    """Compare current line coverage against a baseline.

    Args:
        baseline: Summary of the target branch, or None when no baseline
            exists (every file then counts as 0% in the baseline).
        current: Summary of the branch under review.
        options: Exclusions, working directory and link base.

    Returns:
        The verdict, trend title and one row per reported file, sorted by
        full path.
    """
    options = options or DeltaOptions()
    verdict = Verdict.PENDING
    title = TITLE_NOT_CHANGING
    rows: list[DiffRow] = []

    for path in sorted(current.files):
        name = relative_name(path, options.working_directory)
        if _is_excluded(name, options):
            continue

        coverage_pct = current.files[path].lines.pct
        baseline_pct = baseline.line_pct(path) if baseline is not None else None
        row = DiffRow(
            name=name,
            url=f"{options.head_url}/{name}" if options.head_url else name,
            coverage_pct=coverage_pct,
            file_pct=truncate_pct(coverage_pct),
            master_pct=truncate_pct(baseline_pct) if baseline_pct is not None else 0,
        )
        logger.debug("%s: %s -> %s", name, row.master_pct, row.file_pct)

        if row.regressed:
            verdict = Verdict.FAILURE
            title = TITLE_DECREASING
        elif verdict is Verdict.PENDING and row.improved:
            title = TITLE_INCREASING
        rows.append(row)

    if verdict is Verdict.PENDING:
        verdict = Verdict.SUCCESS

    logger.info("%s (%d files, %d regressed)", title, len(rows), sum(r.regressed for r in rows))
    return CoverageDelta(verdict=verdict, title=title, rows=rows)
