"""GitHub REST API client for covdelta.

Covers the calls the coverage check needs: comparing revisions, listing and
downloading workflow artifacts, and creating check runs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)

# GitHub API constants
GITHUB_API_BASE = "https://api.github.com"
_GITHUB_AUTH_ENV_KEY = "GITHUB_" + "TOKEN"
_GITHUB_API_URL_ENV_KEY = "GITHUB_API_URL"

_REQUEST_TIMEOUT = 30
_ARTIFACTS_PER_PAGE = 100


@dataclass
class CheckRunParams:
    """Parameters for creating a check run."""

    name: str
    """Check name shown in the PR checks list."""

    head_sha: str
    """Commit the check run is attached to."""

    conclusion: str
    """One of success, failure, neutral, cancelled, skipped, timed_out."""

    title: str
    """Output title."""

    summary: str
    """Output summary (markdown formatted)."""

    started_at: str
    """ISO 8601 start timestamp."""

    completed_at: str
    """ISO 8601 completion timestamp."""

    status: str = "completed"
    """Check run status."""


class GitHubAPIError(Exception):
    """Exception raised when GitHub API operations fail."""


class GitHubAPI:
    """Client for interacting with the GitHub API.

    Handles authentication and the artifact, compare and check-run endpoints.
    """

    def __init__(self, token: str | None = None, api_url: str | None = None) -> None:
        """Initialize the GitHub API client.

        Args:
            token: GitHub token. If not provided, will try to read from the
                GITHUB_TOKEN environment variable.
            api_url: API base URL. Defaults to GITHUB_API_URL or api.github.com.

        Raises:
            GitHubAPIError: If no token is available.
        """
        self._token = token or os.environ.get(_GITHUB_AUTH_ENV_KEY)
        if not self._token:
            raise GitHubAPIError(
                f"GitHub token required. Set {_GITHUB_AUTH_ENV_KEY} environment variable "
                "or pass token to constructor."
            )

        self._api_base = (
            api_url or os.environ.get(_GITHUB_API_URL_ENV_KEY) or GITHUB_API_BASE
        ).rstrip("/")
        self._session_headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @property
    def api_base(self) -> str:
        return self._api_base

    def compare_commits(self, owner: str, repo: str, base: str, head: str) -> list[str]:
        """Return the file names changed between two revisions.

        Args:
            owner: Repository owner.
            repo: Repository name.
            base: Base ref or SHA.
            head: Head ref or SHA.

        Returns:
            Paths of changed files, relative to the repository root.

        Raises:
            GitHubAPIError: If the API request fails.
        """
        url = f"{self._api_base}/repos/{owner}/{repo}/compare/{base}...{head}"

        comparison: dict[str, Any] = self._get(url)
        files = comparison.get("files") or []
        return [str(entry["filename"]) for entry in files if entry.get("filename")]

    def list_artifacts(self, owner: str, repo: str, *, name: str | None = None) -> dict[str, Any]:
        """List workflow artifacts for a repository, newest first.

        Args:
            owner: Repository owner.
            repo: Repository name.
            name: Only return artifacts with this exact name.

        Returns:
            GitHub API response with ``total_count`` and ``artifacts``.

        Raises:
            GitHubAPIError: If the API request fails.
        """
        url = f"{self._api_base}/repos/{owner}/{repo}/actions/artifacts"

        params: dict[str, Any] = {"per_page": _ARTIFACTS_PER_PAGE}
        if name is not None:
            params["name"] = name

        result: dict[str, Any] = self._get(url, params=params)
        return result

    def download_artifact(
        self, owner: str, repo: str, artifact_id: int, archive_format: str = "zip"
    ) -> bytes:
        """Download an artifact archive.

        The API answers with a redirect to short-lived storage; ``requests``
        follows it and drops the Authorization header on the host change.

        Args:
            owner: Repository owner.
            repo: Repository name.
            artifact_id: Artifact identifier.
            archive_format: Archive format (only ``zip`` is supported by GitHub).

        Returns:
            Raw archive bytes.

        Raises:
            GitHubAPIError: If the API request fails.
        """
        url = (
            f"{self._api_base}/repos/{owner}/{repo}/actions/artifacts/"
            f"{artifact_id}/{archive_format}"
        )

        logger.info("Downloading artifact %d", artifact_id)
        return self._get_bytes(url)

    def create_check_run(self, owner: str, repo: str, params: CheckRunParams) -> dict[str, Any]:
        """Create a check run on a commit.

        Args:
            owner: Repository owner.
            repo: Repository name.
            params: Check run parameters.

        Returns:
            GitHub API response with check run details.

        Raises:
            GitHubAPIError: If the API request fails.
        """
        url = f"{self._api_base}/repos/{owner}/{repo}/check-runs"

        data: dict[str, Any] = {
            "name": params.name,
            "head_sha": params.head_sha,
            "status": params.status,
            "started_at": params.started_at,
            "completed_at": params.completed_at,
            "conclusion": params.conclusion,
            "output": {
                "title": params.title,
                "summary": params.summary,
            },
        }

        logger.info(
            "Creating check run %r on %s: %s", params.name, params.head_sha[:8], params.conclusion
        )
        result: dict[str, Any] = self._post(url, data)
        return result

    def _get(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """Make a GET request to the GitHub API.

        Args:
            url: Full API URL.
            params: Optional query parameters.

        Returns:
            Parsed JSON response.

        Raises:
            GitHubAPIError: If the request fails.
        """
        try:
            response = requests.get(
                url, params=params, headers=self._session_headers, timeout=_REQUEST_TIMEOUT
            )
            response.raise_for_status()
            return response.json()
        except Exception as exc:
            raise GitHubAPIError(f"GET request failed: {exc}") from exc

    def _get_bytes(self, url: str) -> bytes:
        """Make a GET request and return the raw body.

        Raises:
            GitHubAPIError: If the request fails.
        """
        try:
            response = requests.get(url, headers=self._session_headers, timeout=_REQUEST_TIMEOUT)
            response.raise_for_status()
            return response.content
        except Exception as exc:
            raise GitHubAPIError(f"GET request failed: {exc}") from exc

    def _post(self, url: str, data: dict[str, Any]) -> Any:
        """Make a POST request to the GitHub API.

        Args:
            url: Full API URL.
            data: Request body data.

        Returns:
            Parsed JSON response.

        Raises:
            GitHubAPIError: If the request fails.
        """
        try:
            response = requests.post(
                url, json=data, headers=self._session_headers, timeout=_REQUEST_TIMEOUT
            )
            response.raise_for_status()
            return response.json()
        except Exception as exc:
            raise GitHubAPIError(f"POST request failed: {exc}") from exc
