"""GitHub Actions event context detection utilities."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Expected number of parts when splitting "owner/repo"
_OWNER_REPO_PARTS = 2

_BRANCH_REF_PREFIX = "refs/heads/"
_ARTIFACT_SUFFIX = "-coverage"
_UNSAFE_ARTIFACT_CHARS = re.compile(r'[":<>|*?\\/]')

PUSH_EVENT = "push"
PULL_REQUEST_EVENT = "pull_request"


def ref_to_artifact_name(ref: str) -> str:
    """Derive the coverage artifact name for a branch ref.

    Strips ``refs/heads/``, replaces characters artifact names may not
    contain with ``_`` and appends ``-coverage``.

    >>> ref_to_artifact_name("refs/heads/feature/my:branch")
    'feature_my_branch-coverage'
    """
    ref = ref.removeprefix(_BRANCH_REF_PREFIX)
    return _UNSAFE_ARTIFACT_CHARS.sub("_", ref) + _ARTIFACT_SUFFIX


@dataclass
class PullRequestInfo:
    """Pull request fields taken from the event payload."""

    base_ref: str
    """Target branch name."""

    head_sha: str
    """Head commit SHA."""

    head_repo_url: str
    """HTML URL of the head repository (may be a fork)."""

    @property
    def head_blob_url(self) -> str:
        """Base URL for linking files at the head commit."""
        return f"{self.head_repo_url}/blob/{self.head_sha}"


@dataclass
class ActionContext:
    """Detected GitHub Actions execution context."""

    event_name: str
    """Triggering event (push, pull_request, ...)."""

    ref: str
    """Fully qualified ref that triggered the run."""

    sha: str | None
    """Commit SHA that triggered the run."""

    repo_owner: str | None
    """Repository owner (org or user)."""

    repo_name: str | None
    """Repository name."""

    pull_request: PullRequestInfo | None = None
    """Pull request details for pull_request events."""

    @property
    def is_push(self) -> bool:
        return self.event_name == PUSH_EVENT

    @property
    def is_pr(self) -> bool:
        return self.event_name == PULL_REQUEST_EVENT and self.pull_request is not None


def detect_action_context() -> ActionContext:
    """Detect the GitHub Actions context from environment variables.

    Reads ``GITHUB_EVENT_NAME``, ``GITHUB_REF``, ``GITHUB_SHA``,
    ``GITHUB_REPOSITORY`` and the event payload at ``GITHUB_EVENT_PATH``.

    Returns:
        ActionContext with detected values.
    """
    event_name = os.getenv("GITHUB_EVENT_NAME", "")

    # Extract repo info from GITHUB_REPOSITORY (format: owner/repo)
    repo_full = os.getenv("GITHUB_REPOSITORY", "")
    repo_parts = repo_full.split("/") if repo_full else []
    repo_owner = repo_parts[0] if len(repo_parts) == _OWNER_REPO_PARTS else None
    repo_name = repo_parts[1] if len(repo_parts) == _OWNER_REPO_PARTS else None

    pull_request = None
    if event_name == PULL_REQUEST_EVENT:
        payload = load_event_payload(os.getenv("GITHUB_EVENT_PATH"))
        pull_request = parse_pull_request(payload)

    return ActionContext(
        event_name=event_name,
        ref=os.getenv("GITHUB_REF", ""),
        sha=os.getenv("GITHUB_SHA"),
        repo_owner=repo_owner,
        repo_name=repo_name,
        pull_request=pull_request,
    )


def load_event_payload(event_path: str | None) -> dict[str, Any]:
    """Load the webhook payload GitHub Actions writes for the run.

    Returns an empty dict when the path is unset, missing or unreadable.
    """
    if not event_path:
        return {}
    path = Path(event_path)
    if not path.is_file():
        logger.warning("Event payload %s does not exist", path)
        return {}
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read event payload %s: %s", path, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def parse_pull_request(payload: dict[str, Any]) -> PullRequestInfo | None:
    """Extract base ref, head SHA and head repository URL from a payload."""
    pr = payload.get("pull_request")
    if not isinstance(pr, dict):
        return None
    base = pr.get("base") or {}
    head = pr.get("head") or {}
    head_repo = head.get("repo") or {}

    base_ref = base.get("ref")
    head_sha = head.get("sha")
    if not base_ref or not head_sha:
        return None
    return PullRequestInfo(
        base_ref=str(base_ref),
        head_sha=str(head_sha),
        head_repo_url=str(head_repo.get("html_url", "")),
    )
