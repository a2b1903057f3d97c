"""Data models for covdelta."""

from covdelta.models.coverage import CoverageMetric, CoverageSummary, FileSummary

__all__ = [
    "CoverageMetric",
    "CoverageSummary",
    "FileSummary",
]
