"""Analyzers comparing coverage between revisions."""

from covdelta.analyzers.delta import (
    CoverageDelta,
    DeltaOptions,
    DiffRow,
    Verdict,
    compute_delta,
)

__all__ = [
    "CoverageDelta",
    "DeltaOptions",
    "DiffRow",
    "Verdict",
    "compute_delta",
]
