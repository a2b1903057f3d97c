"""Tests for coverage artifact storage (utils/artifacts.py)."""

from __future__ import annotations

import base64
import hashlib
import io
import json
import zipfile
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
import requests as _requests
import responses
from responses import matchers

if TYPE_CHECKING:
    from pathlib import Path

from covdelta.utils.artifacts import (
    ArtifactClient,
    ArtifactNotFoundError,
    ArtifactUploadError,
    _backend_ids_from_token,
    build_archive,
    extract_member,
)
from covdelta.utils.git import GitHubAPIError

_RESULTS_URL = "https://results.example"
_SERVICE = f"{_RESULTS_URL}/twirp/github.actions.results.api.v1.ArtifactService"
_SIGNED_URL = "https://blob.example/upload?sig=1"


def _token(scope: str) -> str:
    payload = base64.urlsafe_b64encode(json.dumps({"scp": scope}).encode()).decode().rstrip("=")
    return f"eyJhbGciOiJIUzI1NiJ9.{payload}.signature"


_RUNTIME_TOKEN = _token("Actions.ExampleScope Actions.Results:run-backend:job-backend")


def _zip(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def _client(api: Any = None, **kwargs: Any) -> ArtifactClient:
    return ArtifactClient(
        api or MagicMock(),
        "octocat",
        "hello-world",
        runtime_token=kwargs.get("runtime_token", _RUNTIME_TOKEN),
        results_url=kwargs.get("results_url", _RESULTS_URL),
    )


@pytest.fixture()
def coverage_file(tmp_path: Path) -> Path:
    path = tmp_path / "coverage" / "coverage-final.json"
    path.parent.mkdir()
    path.write_text('{"/a.js": {}}', encoding="utf-8")
    return path


# ── Runtime token ────────────────────────────────────────────────


class TestBackendIds:
    def test_reads_results_scope(self) -> None:
        ids = _backend_ids_from_token(_RUNTIME_TOKEN)
        assert ids.workflow_run_backend_id == "run-backend"
        assert ids.workflow_job_run_backend_id == "job-backend"

    def test_not_a_jwt(self) -> None:
        with pytest.raises(ArtifactUploadError, match="not a JWT"):
            _backend_ids_from_token("opaque")

    def test_missing_scope(self) -> None:
        with pytest.raises(ArtifactUploadError, match="no Actions.Results scope"):
            _backend_ids_from_token(_token("Actions.GenericRead:1"))


# ── Archive ──────────────────────────────────────────────────────


class TestBuildArchive:
    def test_names_relative_to_root(self, coverage_file: Path) -> None:
        archive, failed = build_archive(
            [coverage_file], coverage_file.parent, continue_on_error=True
        )

        assert failed == []
        assert extract_member(archive, "coverage-final.json") == b'{"/a.js": {}}'

    def test_missing_file_skipped(self, coverage_file: Path, tmp_path: Path) -> None:
        missing = tmp_path / "coverage" / "other.json"

        _, failed = build_archive(
            [coverage_file, missing], coverage_file.parent, continue_on_error=True
        )

        assert failed == [str(missing)]

    def test_missing_file_fails_without_continue(
        self, coverage_file: Path, tmp_path: Path
    ) -> None:
        with pytest.raises(ArtifactUploadError, match="File not found"):
            build_archive(
                [coverage_file, tmp_path / "nope.json"],
                coverage_file.parent,
                continue_on_error=False,
            )

    def test_nothing_to_upload(self, tmp_path: Path) -> None:
        with pytest.raises(ArtifactUploadError, match="No files"):
            build_archive([tmp_path / "nope.json"], tmp_path, continue_on_error=True)


class TestExtractMember:
    def test_missing_member(self) -> None:
        with pytest.raises(ArtifactNotFoundError, match="not found"):
            extract_member(_zip({"a.json": b"{}"}), "b.json")

    def test_not_a_zip(self) -> None:
        with pytest.raises(ArtifactNotFoundError, match="not a zip"):
            extract_member(b"plain bytes", "a.json")


# ── Upload ───────────────────────────────────────────────────────


class TestUploadArtifact:
    @responses.activate
    def test_full_upload_flow(self, coverage_file: Path) -> None:
        backend = {"workflowRunBackendId": "run-backend", "workflowJobRunBackendId": "job-backend"}
        responses.add(
            responses.POST,
            f"{_SERVICE}/CreateArtifact",
            json={"ok": True, "signedUploadUrl": _SIGNED_URL},
            match=[
                matchers.header_matcher({"Authorization": f"Bearer {_RUNTIME_TOKEN}"}),
                matchers.json_params_matcher({**backend, "name": "main-coverage", "version": 4}),
            ],
        )
        responses.add(
            responses.PUT,
            _SIGNED_URL,
            status=201,
            match=[matchers.header_matcher({"x-ms-blob-type": "BlockBlob"})],
        )
        responses.add(
            responses.POST,
            f"{_SERVICE}/FinalizeArtifact",
            json={"ok": True, "artifactId": "77"},
        )

        result = _client().upload_artifact(
            "main-coverage", [coverage_file], coverage_file.parent
        )

        assert result.success
        assert result.artifact_id == 77
        assert result.error is None

        uploaded = responses.calls[1].request.body
        assert isinstance(uploaded, bytes)
        assert result.size == len(uploaded)
        finalize = json.loads(responses.calls[2].request.body)
        assert finalize == {
            **backend,
            "name": "main-coverage",
            "size": str(len(uploaded)),
            "hash": f"sha256:{hashlib.sha256(uploaded).hexdigest()}",
        }

    def test_missing_runtime_environment_never_raises(
        self, coverage_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("ACTIONS_RUNTIME_TOKEN", raising=False)
        monkeypatch.delenv("ACTIONS_RESULTS_URL", raising=False)
        client = ArtifactClient(MagicMock(), "octocat", "hello-world")

        result = client.upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert "ACTIONS_RUNTIME_TOKEN" in (result.error or "")

    @responses.activate
    def test_rejected_create_never_raises(self, coverage_file: Path) -> None:
        responses.add(
            responses.POST, f"{_SERVICE}/CreateArtifact", json={"msg": "conflict"}, status=409
        )

        result = _client().upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert "CreateArtifact failed" in (result.error or "")

    @responses.activate
    def test_transport_error_never_raises(self, coverage_file: Path) -> None:
        responses.add(
            responses.POST,
            f"{_SERVICE}/CreateArtifact",
            body=_requests.ConnectionError("unreachable"),
        )

        result = _client().upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert "unreachable" in (result.error or "")

    @pytest.mark.parametrize("reply", [["ok"], "ok", 3])
    @responses.activate
    def test_non_object_reply_never_raises(self, coverage_file: Path, reply: Any) -> None:
        responses.add(responses.POST, f"{_SERVICE}/CreateArtifact", json=reply)

        result = _client().upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert "CreateArtifact returned an unexpected reply" in (result.error or "")

    @responses.activate
    def test_invalid_json_reply_never_raises(self, coverage_file: Path) -> None:
        responses.add(responses.POST, f"{_SERVICE}/CreateArtifact", body="<html>oops</html>")

        result = _client().upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert "CreateArtifact returned invalid JSON" in (result.error or "")

    @responses.activate
    def test_bad_artifact_id_never_raises(self, coverage_file: Path) -> None:
        responses.add(
            responses.POST,
            f"{_SERVICE}/CreateArtifact",
            json={"ok": True, "signedUploadUrl": _SIGNED_URL},
        )
        responses.add(responses.PUT, _SIGNED_URL, status=201)
        responses.add(
            responses.POST,
            f"{_SERVICE}/FinalizeArtifact",
            json={"ok": True, "artifactId": "not-a-number"},
        )

        result = _client().upload_artifact("main-coverage", [coverage_file], coverage_file.parent)

        assert not result.success
        assert result.artifact_id is None
        assert "bad artifactId" in (result.error or "")

    def test_missing_files_never_raise(self, tmp_path: Path) -> None:
        result = _client().upload_artifact("main-coverage", [tmp_path / "nope.json"], tmp_path)

        assert not result.success
        assert result.failed_items == []
        assert result.error == "No files to upload"


# ── Download ─────────────────────────────────────────────────────


def _artifact(
    artifact_id: int, name: str, created_at: str, *, expired: bool = False
) -> dict[str, Any]:
    return {"id": artifact_id, "name": name, "created_at": created_at, "expired": expired}


class TestDownloadArtifactByName:
    def test_repository_without_artifacts_raises(self) -> None:
        api = MagicMock()
        api.list_artifacts.return_value = {"total_count": 0, "artifacts": []}

        with pytest.raises(ArtifactNotFoundError, match="No artifacts found!"):
            _client(api).download_artifact_by_name("main-coverage")

    def test_no_matching_name_returns_none(self) -> None:
        api = MagicMock()
        api.list_artifacts.side_effect = [
            {"total_count": 3, "artifacts": []},
            {"total_count": 0, "artifacts": []},
        ]

        assert _client(api).download_artifact_by_name("main-coverage") is None
        api.download_artifact.assert_not_called()

    def test_picks_newest_live_exact_match(self) -> None:
        api = MagicMock()
        api.list_artifacts.side_effect = [
            {"total_count": 5, "artifacts": []},
            {
                "total_count": 4,
                "artifacts": [
                    _artifact(1, "main-coverage", "2024-01-01T00:00:00Z"),
                    _artifact(2, "main-coverage", "2024-03-01T00:00:00Z"),
                    _artifact(3, "main-coverage", "2024-05-01T00:00:00Z", expired=True),
                    _artifact(4, "main-coverage-old", "2024-06-01T00:00:00Z"),
                ],
            },
        ]
        api.download_artifact.return_value = b"zip"

        assert _client(api).download_artifact_by_name("main-coverage") == b"zip"
        api.list_artifacts.assert_called_with("octocat", "hello-world", name="main-coverage")
        api.download_artifact.assert_called_once_with("octocat", "hello-world", 2)

    def test_api_errors_propagate(self) -> None:
        api = MagicMock()
        api.list_artifacts.side_effect = GitHubAPIError("GET request failed: 500")

        with pytest.raises(GitHubAPIError):
            _client(api).download_artifact_by_name("main-coverage")
