"""covdelta CLI: top-level command group."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
import yaml

from covdelta import __version__
from covdelta.adapters.coverage.istanbul import IstanbulSummarizer, SummarizationError
from covdelta.analyzers.delta import DEFAULT_EXCLUDED_PREFIXES, DeltaOptions, compute_delta
from covdelta.config import (
    ConfigurationError,
    CovDeltaConfig,
    load_config,
    require_valid_config,
    validate_config,
)
from covdelta.models.coverage import CoverageSummary
from covdelta.pipeline import CoveragePipeline, PipelineResult
from covdelta.reporters.terminal import console, reporter
from covdelta.utils.artifacts import ArtifactNotFoundError
from covdelta.utils.ci_context import detect_action_context
from covdelta.utils.git import GitHubAPIError

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"

# Masking thresholds
_MIN_MASKED_VALUE_LENGTH = 8


def _config_to_dict(config: CovDeltaConfig) -> dict[str, Any]:
    """Convert CovDeltaConfig to dictionary for display."""
    result = asdict(config)
    # Remove the raw field as it's redundant
    result.pop("raw", None)
    return result


def _mask_sensitive_values(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Recursively mask sensitive values in configuration dict."""
    result = copy.deepcopy(config_dict)

    sensitive_keys = {"token"}

    def _mask_dict(data: dict[str, Any]) -> None:
        for key, value in data.items():
            if key in sensitive_keys and isinstance(value, str) and value:
                # Show first 4 chars, mask the rest
                if len(value) > _MIN_MASKED_VALUE_LENGTH:
                    data[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    data[key] = "***"
            elif isinstance(value, dict):
                _mask_dict(value)

    _mask_dict(result)
    return result


def _read_summary(path: str, *, summary_input: bool, summarizer: IstanbulSummarizer) -> CoverageSummary:
    if not summary_input:
        return summarizer.summarize(path)
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SummarizationError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise SummarizationError(f"{path} is not a coverage summary")
    return CoverageSummary.from_json(data)


def _display_pipeline_result(result: PipelineResult) -> None:
    if result.skipped:
        reporter.print_info(f"Nothing to do for event '{result.event_name}'.")
        return

    if result.upload is not None:
        if result.upload.success:
            reporter.print_success(f"Uploaded coverage artifact {result.upload.artifact_name}")
        else:
            reporter.print_warning(
                f"Coverage artifact {result.upload.artifact_name} was not uploaded: "
                f"{result.upload.error}"
            )
        return

    if result.delta is not None:
        if not result.baseline_found:
            reporter.print_warning("No baseline coverage found; compared against 0%.")
        reporter.print_delta(result.delta)
        if result.check_run:
            reporter.print_info(f"Check run: {result.check_run.get('html_url', '')}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.version_option(version=__version__, prog_name="covdelta")
@click.pass_context
def cli(ctx: click.Context, *, verbose: bool) -> None:
    """covdelta: coverage deltas for pull requests, published as check runs."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=_LOG_FORMAT)


@cli.command()
@click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)
@click.option(
    "--strict-baseline/--no-strict-baseline",
    default=None,
    help="Fail when the base branch has no coverage artifact.",
)
@click.option(
    "--changed-files-only/--all-files",
    default=None,
    help="Only report files touched by the pull request.",
)
def run(path: str, *, strict_baseline: bool | None, changed_files_only: bool | None) -> None:
    """Run the coverage check for the current GitHub Actions event.

    On push, uploads the coverage file as the branch's artifact. On
    pull_request, compares against the base branch's artifact and publishes
    a check run.
    """
    try:
        config = load_config(path)
        if strict_baseline is not None:
            config.check.strict_baseline = strict_baseline
        if changed_files_only is not None:
            config.check.changed_files_only = changed_files_only
        require_valid_config(config)
    except (ConfigurationError, yaml.YAMLError) as e:
        reporter.print_error(f"Invalid configuration: {e}")
        raise click.Abort from e

    context = detect_action_context()
    logger.info("Handling %s event for %s", context.event_name or "unknown", context.ref)

    try:
        result = CoveragePipeline(config, context).run()
    except (ArtifactNotFoundError, SummarizationError, GitHubAPIError, ValueError) as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    _display_pipeline_result(result)


@cli.command()
@click.argument("coverage_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--report-dir",
    default=".covdelta",
    type=click.Path(file_okay=False),
    help="Directory for the generated coverage-summary.json.",
)
@click.option("--no-remap", is_flag=True, help="Skip source-map remapping.")
@click.option("--json-output", "as_json", is_flag=True, help="Output json-summary instead of a table.")
def summarize(coverage_file: str, report_dir: str, *, no_remap: bool, as_json: bool) -> None:
    """Summarize a raw Istanbul coverage file.

    Example:
      covdelta summarize coverage/coverage-final.json
    """
    summarizer = IstanbulSummarizer(report_dir, remap=not no_remap)
    try:
        summary = summarizer.summarize(coverage_file)
    except SummarizationError as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    if as_json:
        click.echo(json.dumps(summary.to_json(), indent=2))
        return
    reporter.print_coverage_summary(summary)


@cli.command()
@click.argument("current", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--baseline",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Baseline coverage file. Without it every file counts as 0% in the baseline.",
)
@click.option(
    "--exclude",
    "excluded",
    multiple=True,
    help="Relative path prefix to leave out (repeatable). Defaults to node_modules and bpack/runtime/.",
)
@click.option(
    "--working-directory",
    default=None,
    help="Prefix stripped from covered paths. Defaults to the current directory.",
)
@click.option("--head-url", default="", help="Base URL for file links.")
@click.option("--summary-input", is_flag=True, help="Inputs are json-summary files, not raw coverage.")
@click.option("--markdown", is_flag=True, help="Print the markdown table published in check runs.")
@click.option(
    "--report-dir",
    default=".covdelta",
    type=click.Path(file_okay=False),
    help="Directory for the generated coverage-summary.json.",
)
def diff(
    current: str,
    baseline: str | None,
    excluded: tuple[str, ...],
    working_directory: str | None,
    head_url: str,
    report_dir: str,
    *,
    summary_input: bool,
    markdown: bool,
) -> None:
    """Compare two coverage files locally.

    Exits with status 1 when any file lost coverage.

    Example:
      covdelta diff coverage/coverage-final.json --baseline main-coverage.json
    """
    summarizer = IstanbulSummarizer(report_dir)
    try:
        base_summary = (
            _read_summary(baseline, summary_input=summary_input, summarizer=summarizer)
            if baseline
            else None
        )
        current_summary = _read_summary(current, summary_input=summary_input, summarizer=summarizer)
    except SummarizationError as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    options = DeltaOptions(
        working_directory=working_directory if working_directory is not None else str(Path.cwd()),
        head_url=head_url,
        excluded_prefixes=excluded or DEFAULT_EXCLUDED_PREFIXES,
    )
    delta = compute_delta(base_summary, current_summary, options)

    if markdown:
        click.echo(f"## {delta.title}\n")
        click.echo(delta.table)
    else:
        reporter.print_delta(delta)

    if delta.regressions:
        raise SystemExit(1)


@cli.group("config")
def config_group() -> None:
    """Inspect covdelta configuration."""


@config_group.command("show")
@click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)
@click.option(
    "--json-output",
    "as_json",
    is_flag=True,
    help="Output as JSON instead of YAML.",
)
@click.option(
    "--no-mask",
    is_flag=True,
    help="Show sensitive values unmasked (use with caution).",
)
def config_show(path: str, *, as_json: bool, no_mask: bool) -> None:
    """Display resolved configuration with masked sensitive values.

    Example:
      covdelta config show
      covdelta config show --json-output
    """
    try:
        config = load_config(path)
    except (ConfigurationError, yaml.YAMLError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e

    config_dict = _config_to_dict(config)

    if not no_mask:
        config_dict = _mask_sensitive_values(config_dict)

    if as_json:
        click.echo(json.dumps(config_dict, indent=2))
    else:
        console.print()
        console.print("[bold cyan]Configuration:[/bold cyan]")
        console.print()
        click.echo(yaml.safe_dump(config_dict, sort_keys=False, default_flow_style=False))


@config_group.command("validate")
@click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)
def config_validate(path: str) -> None:
    """Check that a run would have everything it needs.

    Example:
      covdelta config validate
    """
    try:
        config = load_config(path)
    except (ConfigurationError, yaml.YAMLError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e

    errors = validate_config(config)

    if not errors:
        reporter.print_success("Configuration is valid!")
        return

    reporter.print_error(f"Found {len(errors)} configuration error(s):")
    console.print()

    for idx, error in enumerate(errors, start=1):
        console.print(f"  {idx}. [red]{error}[/red]")

    console.print()
    raise click.Abort
