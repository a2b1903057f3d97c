"""Check-run reporter for publishing coverage deltas on a commit."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from covdelta.utils.git import CheckRunParams, GitHubAPIError

if TYPE_CHECKING:
    from covdelta.analyzers.delta import CoverageDelta
    from covdelta.utils.git import GitHubAPI

logger = logging.getLogger(__name__)

DEFAULT_CHECK_NAME = "Coverage"


class PublishError(GitHubAPIError):
    """Raised when the check run cannot be created."""


class CheckRunReporter:
    """Reporter that posts a coverage delta as a completed check run.

    The check run carries the verdict as its conclusion, the trend as its
    title and the per-file table as its summary.
    """

    def __init__(
        self, api: GitHubAPI, owner: str, repo: str, *, check_name: str = DEFAULT_CHECK_NAME
    ) -> None:
        self._api = api
        self._owner = owner
        self._repo = repo
        self._check_name = check_name

    def publish(self, head_sha: str, delta: CoverageDelta) -> dict[str, Any]:
        """Create the check run for *delta* on *head_sha*.

        Args:
            head_sha: Commit the check run is attached to.
            delta: Computed coverage delta.

        Returns:
            GitHub API response with check run details.

        Raises:
            PublishError: If the API rejects the check run.
        """
        now = datetime.now(UTC).isoformat()
        params = CheckRunParams(
            name=self._check_name,
            head_sha=head_sha,
            conclusion=delta.conclusion,
            title=delta.title,
            summary=delta.table,
            started_at=now,
            completed_at=now,
        )

        try:
            result = self._api.create_check_run(self._owner, self._repo, params)
        except GitHubAPIError as exc:
            raise PublishError(f"Failed to publish check run {self._check_name!r}: {exc}") from exc

        logger.info("Published check run: %s", result.get("html_url", ""))
        return result
