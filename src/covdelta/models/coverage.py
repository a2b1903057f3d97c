"""Coverage summary models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Reserved key holding the aggregate entry in json-summary documents
TOTAL_KEY = "total"

# Order in which Istanbul's json-summary writes the metric blocks
METRIC_KINDS = ("lines", "statements", "functions", "branches")


def percent(covered: int, total: int) -> float:
    """Return coverage percentage truncated to two decimals.

    Mirrors Istanbul's rounding: ``floor(10000 * covered / total) / 100`` and
    ``100`` for an empty counter, so nothing-to-cover counts as fully covered.
    """
    if total > 0:
        return (10000 * covered // total) / 100
    return 100.0


@dataclass
class CoverageMetric:
    """Totals for one counter kind (lines, statements, functions or branches)."""

    total: int = 0
    """Number of countable items."""

    covered: int = 0
    """Items hit at least once."""

    skipped: int = 0
    """Items excluded from coverage by an ignore hint."""

    pct: float = field(default=-1.0)
    """Coverage percentage (0.0 to 100.0); derived from the counts unless given."""

    def __post_init__(self) -> None:
        if self.pct < 0:
            self.pct = percent(self.covered, self.total)

    def merge(self, other: CoverageMetric) -> CoverageMetric:
        """Return a new metric summing this one and *other*."""
        return CoverageMetric(
            total=self.total + other.total,
            covered=self.covered + other.covered,
            skipped=self.skipped + other.skipped,
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "covered": self.covered,
            "skipped": self.skipped,
            "pct": self.pct,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CoverageMetric:
        pct = data.get("pct")
        return cls(
            total=int(data.get("total", 0)),
            covered=int(data.get("covered", 0)),
            skipped=int(data.get("skipped", 0)),
            pct=float(pct) if isinstance(pct, int | float) else -1.0,
        )


@dataclass
class FileSummary:
    """Per-file coverage summary in the Istanbul json-summary shape."""

    lines: CoverageMetric = field(default_factory=CoverageMetric)
    statements: CoverageMetric = field(default_factory=CoverageMetric)
    functions: CoverageMetric = field(default_factory=CoverageMetric)
    branches: CoverageMetric = field(default_factory=CoverageMetric)

    def merge(self, other: FileSummary) -> FileSummary:
        """Return a new summary adding up every metric of this and *other*."""
        return FileSummary(
            lines=self.lines.merge(other.lines),
            statements=self.statements.merge(other.statements),
            functions=self.functions.merge(other.functions),
            branches=self.branches.merge(other.branches),
        )

    def to_json(self) -> dict[str, Any]:
        return {kind: getattr(self, kind).to_json() for kind in METRIC_KINDS}

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> FileSummary:
        return cls(
            **{kind: CoverageMetric.from_json(data.get(kind) or {}) for kind in METRIC_KINDS}
        )


@dataclass
class CoverageSummary:
    """Coverage summary for a whole test run.

    ``files`` maps absolute source paths to their summaries. The aggregate
    across all files is kept apart in ``total`` so it can never be mistaken
    for a source file.
    """

    files: dict[str, FileSummary] = field(default_factory=dict)
    """Per-file summaries keyed by absolute path."""

    total: FileSummary = field(default_factory=FileSummary)
    """Aggregate summary across all files."""

    @classmethod
    def from_files(cls, files: dict[str, FileSummary]) -> CoverageSummary:
        """Build a summary and compute its aggregate from per-file entries."""
        total = FileSummary()
        for summary in files.values():
            total = total.merge(summary)
        return cls(files=dict(files), total=total)

    def rebased(self, old_root: str, new_root: str) -> CoverageSummary:
        """Return a copy whose paths under *old_root* are moved under *new_root*."""
        old_prefix = old_root.rstrip("/") + "/"
        new_prefix = new_root.rstrip("/") + "/"
        files = {
            (new_prefix + path[len(old_prefix) :] if path.startswith(old_prefix) else path): entry
            for path, entry in self.files.items()
        }
        return CoverageSummary(files=files, total=self.total)

    def line_pct(self, path: str) -> float | None:
        """Return the line percentage for *path*, or None if it is not covered here."""
        summary = self.files.get(path)
        if summary is None:
            return None
        return summary.lines.pct

    def to_json(self) -> dict[str, Any]:
        """Render the Istanbul json-summary document (``total`` first)."""
        document: dict[str, Any] = {TOTAL_KEY: self.total.to_json()}
        for path, summary in self.files.items():
            document[path] = summary.to_json()
        return document

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> CoverageSummary:
        """Read a json-summary document; the aggregate is recomputed when absent."""
        files = {
            path: FileSummary.from_json(entry)
            for path, entry in data.items()
            if path != TOTAL_KEY and isinstance(entry, dict)
        }
        total_raw = data.get(TOTAL_KEY)
        if isinstance(total_raw, dict):
            return cls(files=files, total=FileSummary.from_json(total_raw))
        return cls.from_files(files)
