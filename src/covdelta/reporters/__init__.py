"""Reporters for publishing coverage results."""

from __future__ import annotations

from covdelta.reporters.check_run import CheckRunReporter, PublishError
from covdelta.reporters.terminal import reporter

__all__ = [
    "CheckRunReporter",
    "PublishError",
    "reporter",
]
