"""Coverage pipeline - store coverage on push, compare and publish on pull requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any

from covdelta.adapters.coverage.istanbul import IstanbulSummarizer
from covdelta.analyzers.delta import CoverageDelta, DeltaOptions, compute_delta
from covdelta.reporters.check_run import CheckRunReporter
from covdelta.utils.artifacts import (
    ArtifactClient,
    ArtifactNotFoundError,
    UploadResult,
    extract_member,
)
from covdelta.utils.ci_context import PULL_REQUEST_EVENT, PUSH_EVENT, ref_to_artifact_name
from covdelta.utils.git import GitHubAPI

if TYPE_CHECKING:
    from collections.abc import Iterable

    from covdelta.config import CovDeltaConfig
    from covdelta.models.coverage import CoverageSummary
    from covdelta.utils.ci_context import ActionContext, PullRequestInfo

logger = logging.getLogger(__name__)

BASELINE_FILE_NAME = "baseline.json"


@dataclass
class PipelineResult:
    """Result of one pipeline run."""

    event_name: str
    """Event the run handled."""

    upload: UploadResult | None = None
    """Upload outcome (push events)."""

    delta: CoverageDelta | None = None
    """Computed delta (pull request events)."""

    check_run: dict[str, Any] | None = None
    """Created check run (pull request events)."""

    baseline_found: bool = False
    """Whether a baseline artifact was compared against."""

    @property
    def skipped(self) -> bool:
        """True when the event needed no work."""
        return self.upload is None and self.delta is None


class CoveragePipeline:
    """Runs the coverage check for one CI job.

    A push uploads the raw coverage file as ``<branch>-coverage``. A pull
    request downloads the base branch's artifact, summarizes both files,
    computes the delta and publishes it as a check run. Whether a missing
    baseline is fatal is decided by ``check.strict_baseline``.
    """

    def __init__(
        self,
        config: CovDeltaConfig,
        context: ActionContext,
        *,
        api: GitHubAPI | None = None,
        artifacts: ArtifactClient | None = None,
        summarizer: IstanbulSummarizer | None = None,
    ) -> None:
        if not context.repo_owner or not context.repo_name:
            msg = "GITHUB_REPOSITORY is not set or malformed"
            raise ValueError(msg)

        self._config = config
        self._context = context
        self._owner = context.repo_owner
        self._repo = context.repo_name
        self._api = api or GitHubAPI(token=config.github.token, api_url=config.github.api_url)
        self._artifacts = artifacts or ArtifactClient(self._api, self._owner, self._repo)
        self._summarizer = summarizer or IstanbulSummarizer(
            Path(config.root) / config.coverage.report_dir, remap=config.coverage.remap
        )

    def run(self) -> PipelineResult:
        """Dispatch on the triggering event.

        Raises:
            ValueError: If a pull_request event has no usable payload.
        """
        event = self._context.event_name
        if event == PUSH_EVENT:
            return PipelineResult(event_name=event, upload=self.upload_coverage())
        if event == PULL_REQUEST_EVENT:
            if self._context.pull_request is None:
                msg = "pull_request event payload lacks base.ref/head.sha"
                raise ValueError(msg)
            return self.compare_with_baseline(self._context.pull_request)

        logger.info("Nothing to do for event %r", event)
        return PipelineResult(event_name=event)

    def upload_coverage(self) -> UploadResult:
        """Store the raw coverage file as this branch's artifact."""
        coverage_file = self._config.coverage_file
        name = ref_to_artifact_name(self._context.ref)
        logger.info("Uploading coverage artifact %s", name)
        return self._artifacts.upload_artifact(
            name,
            [coverage_file],
            coverage_file.parent,
            continue_on_error=True,
        )

    def compare_with_baseline(self, pull_request: PullRequestInfo) -> PipelineResult:
        """Compare the PR head against the base branch and publish the check run.

        Raises:
            ArtifactNotFoundError: If the repository has no artifacts, or the
                baseline is missing and strict_baseline is set.
            SummarizationError: If either coverage file is unusable.
            GitHubAPIError: If an API call or the publish fails.
        """
        changed = self._api.compare_commits(
            self._owner, self._repo, pull_request.base_ref, pull_request.head_sha
        )
        logger.info("%d files changed against %s", len(changed), pull_request.base_ref)

        baseline = self._load_baseline(pull_request.base_ref)
        current = self._summarizer.summarize(self._config.coverage_file)

        working_directory = self._config.working_directory
        current = _rebase_onto(current, working_directory)
        if baseline is not None:
            baseline = _rebase_onto(baseline, working_directory)

        options = DeltaOptions(
            working_directory=working_directory,
            head_url=pull_request.head_blob_url,
            excluded_prefixes=tuple(self._config.coverage.excluded_prefixes),
            changed_files=set(changed) if self._config.check.changed_files_only else None,
        )
        delta = compute_delta(baseline, current, options)

        reporter = CheckRunReporter(
            self._api, self._owner, self._repo, check_name=self._config.check.name
        )
        check_run = reporter.publish(pull_request.head_sha, delta)

        return PipelineResult(
            event_name=self._context.event_name,
            delta=delta,
            check_run=check_run,
            baseline_found=baseline is not None,
        )

    def _load_baseline(self, base_ref: str) -> CoverageSummary | None:
        """Download and summarize the base branch's coverage, if any."""
        name = ref_to_artifact_name(base_ref)
        archive = self._artifacts.download_artifact_by_name(name)
        if archive is None:
            if self._config.check.strict_baseline:
                raise ArtifactNotFoundError(f"No artifact found with name {name}")
            logger.warning("No baseline artifact %s; comparing against 0%% coverage", name)
            return None

        member = self._config.coverage_file.name
        baseline_file = self._summarizer.report_dir / BASELINE_FILE_NAME
        baseline_file.parent.mkdir(parents=True, exist_ok=True)
        baseline_file.write_bytes(extract_member(archive, member))
        logger.info("Summarizing baseline %s", name)
        return self._summarizer.summarize(baseline_file)


# ── Path mapping ─────────────────────────────────────────────────


def find_recorded_root(paths: Iterable[str], working_directory: str) -> str | None:
    """Find the checkout root absolute coverage paths were recorded under.

    Coverage written by an earlier step on the runner host carries host paths
    such as ``/home/runner/work/r/r/src/a.js``, while a container action sees
    the same checkout at ``/github/workspace``. The longest trailing part of a
    path that exists as a file under *working_directory* gives away the root.

    Returns:
        The recorded root, or None when the paths already live under
        *working_directory* or no file matches.
    """
    if not working_directory:
        return None
    workspace = Path(working_directory)
    prefix = working_directory.rstrip("/") + "/"
    for path in paths:
        if path.startswith(prefix) or not path.startswith("/"):
            continue
        parts = PurePosixPath(path).parts[1:]
        for index in range(1, len(parts)):
            if workspace.joinpath(*parts[index:]).is_file():
                return str(PurePosixPath("/", *parts[:index]))
    return None


def _rebase_onto(summary: CoverageSummary, working_directory: str) -> CoverageSummary:
    recorded_root = find_recorded_root(summary.files, working_directory)
    if recorded_root is None:
        return summary
    logger.info("Mapping coverage paths from %s to %s", recorded_root, working_directory)
    return summary.rebased(recorded_root, working_directory)
