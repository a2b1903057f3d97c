"""Workflow artifact storage for coverage files.

Uploads go through the GitHub Actions results service (the same backend
``actions/upload-artifact`` v4 uses); downloads go through the public REST
API so a pull request run can fetch what a push run on the base branch
stored.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import logging
import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests

if TYPE_CHECKING:
    from covdelta.utils.git import GitHubAPI

logger = logging.getLogger(__name__)

_RUNTIME_TOKEN_ENV_KEY = "ACTIONS_RUNTIME_TOKEN"
_RESULTS_URL_ENV_KEY = "ACTIONS_RESULTS_URL"

_ARTIFACT_SERVICE = "twirp/github.actions.results.api.v1.ArtifactService"
_ARTIFACT_VERSION = 4
_RESULTS_SCOPE_PREFIX = "Actions.Results:"
# "Actions.Results:<run backend id>:<job backend id>"
_RESULTS_SCOPE_PARTS = 3
# JWT header.payload.signature
_JWT_PARTS = 3

_REQUEST_TIMEOUT = 30
_UPLOAD_TIMEOUT = 300


class ArtifactNotFoundError(Exception):
    """Raised when an expected artifact or archive member does not exist."""


class ArtifactUploadError(Exception):
    """Raised when an artifact upload fails."""


@dataclass
class UploadResult:
    """Outcome of a best-effort artifact upload."""

    artifact_name: str
    """Name the artifact was uploaded under."""

    success: bool = False
    """Whether the artifact was stored."""

    size: int = 0
    """Uploaded archive size in bytes."""

    artifact_id: int | None = None
    """Identifier assigned by the store."""

    failed_items: list[str] = field(default_factory=list)
    """Input files that could not be included."""

    error: str | None = None
    """Error message if the upload failed."""


@dataclass
class _BackendIds:
    workflow_run_backend_id: str
    workflow_job_run_backend_id: str


def _backend_ids_from_token(token: str) -> _BackendIds:
    """Read the workflow run/job backend ids from the runtime token's scope claim."""
    parts = token.split(".")
    if len(parts) != _JWT_PARTS:
        raise ArtifactUploadError("Runtime token is not a JWT")
    payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload_b64))
    except (ValueError, json.JSONDecodeError) as exc:
        raise ArtifactUploadError(f"Cannot decode runtime token: {exc}") from exc

    for scope in str(claims.get("scp", "")).split():
        if not scope.startswith(_RESULTS_SCOPE_PREFIX):
            continue
        scope_parts = scope.split(":")
        if len(scope_parts) == _RESULTS_SCOPE_PARTS:
            return _BackendIds(scope_parts[1], scope_parts[2])
    raise ArtifactUploadError("Runtime token has no Actions.Results scope")


def build_archive(
    files: list[Path], root_directory: Path, *, continue_on_error: bool
) -> tuple[bytes, list[str]]:
    """Zip *files* with archive names relative to *root_directory*.

    Returns:
        The archive bytes and the files that were skipped.

    Raises:
        ArtifactUploadError: If a file is unusable and *continue_on_error* is off,
            or if no file could be added.
    """
    failed: list[str] = []
    buffer = io.BytesIO()
    added = 0
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for file_path in files:
            if not file_path.is_file():
                if not continue_on_error:
                    raise ArtifactUploadError(f"File not found: {file_path}")
                logger.warning("Skipping missing artifact file %s", file_path)
                failed.append(str(file_path))
                continue
            try:
                arcname = file_path.resolve().relative_to(root_directory.resolve())
            except ValueError as exc:
                if not continue_on_error:
                    raise ArtifactUploadError(
                        f"{file_path} is not under root directory {root_directory}"
                    ) from exc
                failed.append(str(file_path))
                continue
            archive.write(file_path, arcname.as_posix())
            added += 1
    if not added:
        raise ArtifactUploadError("No files to upload")
    return buffer.getvalue(), failed


class ArtifactClient:
    """Stores and retrieves coverage artifacts for a repository."""

    def __init__(
        self,
        api: GitHubAPI,
        owner: str,
        repo: str,
        *,
        runtime_token: str | None = None,
        results_url: str | None = None,
    ) -> None:
        """Initialize the artifact client.

        Args:
            api: Authenticated GitHub REST client (downloads).
            owner: Repository owner.
            repo: Repository name.
            runtime_token: Actions runtime token (uploads). Defaults to
                ACTIONS_RUNTIME_TOKEN.
            results_url: Actions results service URL (uploads). Defaults to
                ACTIONS_RESULTS_URL.
        """
        self._api = api
        self._owner = owner
        self._repo = repo
        self._runtime_token = runtime_token or os.environ.get(_RUNTIME_TOKEN_ENV_KEY, "")
        self._results_url = (results_url or os.environ.get(_RESULTS_URL_ENV_KEY, "")).rstrip("/")

    # ── Upload ───────────────────────────────────────────────────

    def upload_artifact(
        self,
        name: str,
        files: list[str | Path],
        root_directory: str | Path,
        *,
        continue_on_error: bool = True,
    ) -> UploadResult:
        """Upload files as a named artifact without ever raising.

        Failures are logged and reported through the result so that a push
        run never fails because of the upload.

        Args:
            name: Artifact name.
            files: Files to include.
            root_directory: Directory archive names are relative to.
            continue_on_error: Skip unusable files instead of failing.

        Returns:
            UploadResult describing what happened.
        """
        result = UploadResult(artifact_name=name)
        try:
            archive, result.failed_items = build_archive(
                [Path(f) for f in files],
                Path(root_directory),
                continue_on_error=continue_on_error,
            )
            result.size = len(archive)
            result.artifact_id = self._upload_archive(name, archive)
            result.success = True
            logger.info("Uploaded artifact %s (%d bytes)", name, result.size)
        except (ArtifactUploadError, requests.RequestException, OSError) as exc:
            result.error = str(exc)
            logger.warning("Failed to upload artifact %s: %s", name, exc)
        return result

    def _upload_archive(self, name: str, archive: bytes) -> int | None:
        if not self._runtime_token or not self._results_url:
            raise ArtifactUploadError(
                f"{_RUNTIME_TOKEN_ENV_KEY} and {_RESULTS_URL_ENV_KEY} are required to upload"
            )
        ids = _backend_ids_from_token(self._runtime_token)
        backend = {
            "workflowRunBackendId": ids.workflow_run_backend_id,
            "workflowJobRunBackendId": ids.workflow_job_run_backend_id,
        }

        created = self._twirp(
            "CreateArtifact", {**backend, "name": name, "version": _ARTIFACT_VERSION}
        )
        upload_url = created.get("signedUploadUrl")
        if not created.get("ok") or not upload_url:
            raise ArtifactUploadError(f"CreateArtifact rejected artifact {name}")

        response = requests.put(
            upload_url,
            data=archive,
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": "application/zip"},
            timeout=_UPLOAD_TIMEOUT,
        )
        if response.status_code >= 300:
            raise ArtifactUploadError(
                f"Blob upload failed: {response.status_code} {response.text}"
            )

        digest = hashlib.sha256(archive).hexdigest()
        finalized = self._twirp(
            "FinalizeArtifact",
            {**backend, "name": name, "size": str(len(archive)), "hash": f"sha256:{digest}"},
        )
        if not finalized.get("ok"):
            raise ArtifactUploadError(f"FinalizeArtifact rejected artifact {name}")
        artifact_id = finalized.get("artifactId")
        if artifact_id is None:
            return None
        try:
            return int(artifact_id)
        except (TypeError, ValueError) as exc:
            msg = f"FinalizeArtifact returned bad artifactId {artifact_id!r}"
            raise ArtifactUploadError(msg) from exc

    def _twirp(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._results_url}/{_ARTIFACT_SERVICE}/{method}"
        response = requests.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {self._runtime_token}"},
            timeout=_REQUEST_TIMEOUT,
        )
        if response.status_code >= 300:
            raise ArtifactUploadError(f"{method} failed: {response.status_code} {response.text}")
        try:
            result = response.json()
        except ValueError as exc:
            raise ArtifactUploadError(f"{method} returned invalid JSON: {exc}") from exc
        if not isinstance(result, dict):
            raise ArtifactUploadError(f"{method} returned an unexpected reply: {result!r}")
        return result

    # ── Download ─────────────────────────────────────────────────

    def find_artifact(self, name: str) -> dict[str, Any] | None:
        """Return the newest non-expired artifact named exactly *name*.

        Raises:
            ArtifactNotFoundError: If the repository has no artifacts at all.
            GitHubAPIError: If the API request fails.
        """
        listing = self._api.list_artifacts(self._owner, self._repo)
        if int(listing.get("total_count", 0)) < 1:
            raise ArtifactNotFoundError("No artifacts found!")

        named = self._api.list_artifacts(self._owner, self._repo, name=name)
        candidates = [
            artifact
            for artifact in named.get("artifacts", [])
            if artifact.get("name") == name and not artifact.get("expired", False)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda artifact: str(artifact.get("created_at") or ""))

    def download_artifact_by_name(self, name: str) -> bytes | None:
        """Download the newest artifact named *name*.

        Returns:
            The zip archive bytes, or None when no artifact has that name.

        Raises:
            ArtifactNotFoundError: If the repository has no artifacts at all.
            GitHubAPIError: If an API request fails.
        """
        artifact = self.find_artifact(name)
        if artifact is None:
            logger.info("No artifact named %s", name)
            return None
        return self._api.download_artifact(self._owner, self._repo, int(artifact["id"]))


def extract_member(archive: bytes, member: str) -> bytes:
    """Return one file from a zip archive.

    Raises:
        ArtifactNotFoundError: If *member* is not in the archive.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            return zf.read(member)
    except KeyError as exc:
        raise ArtifactNotFoundError(f"{member} not found in artifact archive") from exc
    except zipfile.BadZipFile as exc:
        raise ArtifactNotFoundError(f"Artifact archive is not a zip file: {exc}") from exc
