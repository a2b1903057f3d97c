"""Coverage adapters producing unified coverage summaries."""

from covdelta.adapters.coverage.istanbul import (
    CoverageFileNotFoundError,
    CoverageParseError,
    IstanbulSummarizer,
    SummarizationError,
)
from covdelta.adapters.coverage.source_maps import SourceMap, SourceMapError, remap_coverage

__all__ = [
    "CoverageFileNotFoundError",
    "CoverageParseError",
    "IstanbulSummarizer",
    "SourceMap",
    "SourceMapError",
    "SummarizationError",
    "remap_coverage",
]
