"""Tests for coverage delta analysis (analyzers/delta.py)."""

from __future__ import annotations

import pytest

from covdelta.analyzers.delta import (
    BAR_EMPTY,
    BAR_FILLED,
    MARKER_OK,
    MARKER_REGRESSED,
    TABLE_HEADER,
    TITLE_DECREASING,
    TITLE_INCREASING,
    TITLE_NOT_CHANGING,
    DeltaOptions,
    Verdict,
    compute_delta,
    format_delta,
    relative_name,
    render_bar,
    truncate_pct,
)
from covdelta.models.coverage import CoverageMetric, CoverageSummary, FileSummary

_WORKDIR = "/work"


def _summary(line_pcts: dict[str, float]) -> CoverageSummary:
    """Build a summary from relative-name percentages rooted at the working directory."""
    return CoverageSummary.from_files(
        {
            f"{_WORKDIR}/{name}": FileSummary(lines=CoverageMetric(pct=pct))
            for name, pct in line_pcts.items()
        }
    )


def _options(**kwargs: object) -> DeltaOptions:
    return DeltaOptions(working_directory=_WORKDIR, **kwargs)  # type: ignore[arg-type]


# ── Formatting helpers ───────────────────────────────────────────


class TestFormatting:
    @pytest.mark.parametrize(
        ("file_pct", "master_pct", "expected"),
        [
            (8000, 9000, "-0.1"),
            (5000, 0, "+0.5"),
            (10000, 0, "+1.0"),
            (5000, 5000, "+0.0"),
            (8333, 8300, "+0.0033"),
        ],
    )
    def test_format_delta(self, file_pct: int, master_pct: int, expected: str) -> None:
        assert format_delta(file_pct, master_pct) == expected

    def test_truncate_pct_floors(self) -> None:
        assert truncate_pct(83.339) == 8333
        assert truncate_pct(100.0) == 10000
        assert truncate_pct(0.0) == 0

    @pytest.mark.parametrize(
        ("pct", "filled"),
        [(0.0, 0), (9.99, 0), (10.0, 1), (55.5, 5), (99.99, 9), (100.0, 10)],
    )
    def test_render_bar(self, pct: float, filled: int) -> None:
        bar = render_bar(pct)
        assert bar == BAR_FILLED * filled + BAR_EMPTY * (10 - filled)

    def test_relative_name(self) -> None:
        assert relative_name("/work/src/a.js", "/work") == "src/a.js"
        assert relative_name("/work/src/a.js", "/work/") == "src/a.js"
        assert relative_name("/elsewhere/a.js", "/work") == "/elsewhere/a.js"
        assert relative_name("/workshop/a.js", "/work") == "/workshop/a.js"
        assert relative_name("/work/a.js", "") == "/work/a.js"


# ── compute_delta ────────────────────────────────────────────────


class TestComputeDelta:
    def test_decrease_fails(self) -> None:
        """a.js 90 -> 80 regresses, b.js is new at 50."""
        delta = compute_delta(
            _summary({"a.js": 90.0}), _summary({"a.js": 80.0, "b.js": 50.0}), _options()
        )

        assert delta.verdict is Verdict.FAILURE
        assert delta.conclusion == "failure"
        assert delta.title == TITLE_DECREASING

        a_row, b_row = delta.rows
        assert a_row.name == "a.js"
        assert a_row.delta_text == "-0.1"
        assert a_row.marker == MARKER_REGRESSED
        assert b_row.delta_text == "+0.5"
        assert b_row.marker == MARKER_OK
        assert delta.regressions == [a_row]

    def test_no_baseline_counts_as_zero(self) -> None:
        delta = compute_delta(None, _summary({"a.js": 100.0}), _options())

        assert delta.verdict is Verdict.SUCCESS
        assert delta.title == TITLE_INCREASING
        assert delta.rows[0].master_pct == 0
        assert delta.rows[0].delta_text == "+1.0"

    def test_identical_summaries_do_not_change(self) -> None:
        summary = _summary({"a.js": 75.5, "b.js": 12.25, "c.js": 100.0})

        delta = compute_delta(summary, summary, _options())

        assert delta.verdict is Verdict.SUCCESS
        assert delta.title == TITLE_NOT_CHANGING
        assert {row.delta_text for row in delta.rows} == {"+0.0"}

    def test_decrease_locks_title(self) -> None:
        """An improvement after a regression does not change the title."""
        delta = compute_delta(
            _summary({"a.js": 90.0, "b.js": 10.0}),
            _summary({"a.js": 80.0, "b.js": 90.0}),
            _options(),
        )

        assert delta.verdict is Verdict.FAILURE
        assert delta.title == TITLE_DECREASING

    def test_increase_after_unchanged(self) -> None:
        delta = compute_delta(
            _summary({"a.js": 50.0, "b.js": 10.0}),
            _summary({"a.js": 50.0, "b.js": 20.0}),
            _options(),
        )

        assert delta.verdict is Verdict.SUCCESS
        assert delta.title == TITLE_INCREASING

    def test_files_only_in_baseline_are_ignored(self) -> None:
        delta = compute_delta(
            _summary({"a.js": 50.0, "gone.js": 90.0}), _summary({"a.js": 50.0}), _options()
        )

        assert [row.name for row in delta.rows] == ["a.js"]
        assert delta.verdict is Verdict.SUCCESS

    def test_sub_hundredth_changes_are_ignored(self) -> None:
        delta = compute_delta(_summary({"a.js": 80.004}), _summary({"a.js": 80.001}), _options())

        assert delta.verdict is Verdict.SUCCESS
        assert delta.rows[0].delta_text == "+0.0"

    def test_rows_sorted_by_full_path(self) -> None:
        current = _summary({"src/z.js": 10.0, "src/a.js": 10.0, "lib/m.js": 10.0})

        delta = compute_delta(current, current, _options())

        assert [row.name for row in delta.rows] == ["lib/m.js", "src/a.js", "src/z.js"]

    def test_default_exclusions(self) -> None:
        current = _summary(
            {"node_modules/lib/x.js": 0.0, "bpack/runtime/y.js": 0.0, "src/a.js": 50.0}
        )

        delta = compute_delta(_summary({}), current, _options())

        assert [row.name for row in delta.rows] == ["src/a.js"]

    def test_excluded_regression_does_not_fail(self) -> None:
        delta = compute_delta(
            _summary({"vendor/a.js": 90.0}),
            _summary({"vendor/a.js": 10.0}),
            _options(excluded_prefixes=("vendor/",)),
        )

        assert delta.rows == []
        assert delta.verdict is Verdict.SUCCESS
        assert delta.title == TITLE_NOT_CHANGING

    def test_changed_files_filter(self) -> None:
        delta = compute_delta(
            _summary({"a.js": 90.0, "b.js": 90.0}),
            _summary({"a.js": 10.0, "b.js": 95.0}),
            _options(changed_files={"b.js"}),
        )

        assert [row.name for row in delta.rows] == ["b.js"]
        assert delta.verdict is Verdict.SUCCESS

    def test_working_directory_is_explicit(self) -> None:
        """Paths outside the working directory keep their absolute name."""
        delta = compute_delta(
            None, _summary({"a.js": 10.0}), DeltaOptions(working_directory="/other")
        )

        assert delta.rows[0].name == "/work/a.js"


# ── Table rendering ──────────────────────────────────────────────


class TestTable:
    def test_table_layout(self) -> None:
        delta = compute_delta(
            _summary({"a.js": 90.0}),
            _summary({"a.js": 80.0, "b.js": 50.0}),
            _options(head_url="https://github.com/o/r/blob/abc"),
        )

        lines = delta.table.splitlines()

        assert lines[0] == TABLE_HEADER
        assert lines[1] == "| | ---- | -------- | ----- |"
        assert lines[2] == (
            f"| {MARKER_REGRESSED} | [a.js](https://github.com/o/r/blob/abc/a.js) | "
            f"{BAR_FILLED * 8}{BAR_EMPTY * 2} 80% | -0.1 |"
        )
        assert lines[3] == (
            f"| {MARKER_OK} | [b.js](https://github.com/o/r/blob/abc/b.js) | "
            f"{BAR_FILLED * 5}{BAR_EMPTY * 5} 50% | +0.5 |"
        )

    def test_fractional_percentages_kept(self) -> None:
        delta = compute_delta(None, _summary({"a.js": 62.5}), _options(head_url="u"))

        assert "62.5% | +0.625 |" in delta.table

    def test_empty_table_has_header_only(self) -> None:
        delta = compute_delta(None, _summary({}), _options())

        assert delta.table.splitlines() == [TABLE_HEADER, "| | ---- | -------- | ----- |"]
