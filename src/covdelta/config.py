"""Configuration parsing from ``.covdelta.yml``, action inputs and the environment."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from covdelta.analyzers.delta import DEFAULT_EXCLUDED_PREFIXES
from covdelta.reporters.check_run import DEFAULT_CHECK_NAME
from covdelta.utils.git import GITHUB_API_BASE

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".covdelta.yml"

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")
_LIST_SPLIT_RE = re.compile(r"[\n,]")
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


def _resolve_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var = match.group(1)
        resolved = os.environ.get(var)
        if resolved is None:
            logger.warning("Environment variable %s is not set (referenced in config)", var)
            return ""
        return resolved

    return _ENV_VAR_RE.sub(_replace, value)


def _resolve_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively resolve environment variables in a dictionary."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, str):
            result[key] = _resolve_env_vars(value)
        elif isinstance(value, dict):
            result[key] = _resolve_dict(value)
        elif isinstance(value, list):
            result[key] = [
                _resolve_env_vars(item) if isinstance(item, str) else item for item in value
            ]
        else:
            result[key] = value
    return result


def _action_input(name: str) -> str | None:
    """Return a GitHub Actions input (``INPUT_<NAME>``), or None when unset or blank."""
    value = os.environ.get(f"INPUT_{name.replace(' ', '_').upper()}")
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Expected a boolean, got {value!r}")


def _parse_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in _LIST_SPLIT_RE.split(str(value)) if part.strip()]


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name, {})
    return section if isinstance(section, dict) else {}


@dataclass
class GitHubConfig:
    """GitHub API access."""

    token: str = ""
    """Bearer token for the REST API (supports ${ENV_VAR} expansion)."""

    api_url: str = GITHUB_API_BASE
    """REST API base URL (GitHub Enterprise Server uses its own)."""


@dataclass
class CoverageConfig:
    """Coverage input and report settings."""

    path: str = ""
    """Raw Istanbul coverage JSON produced by the test run."""

    excluded_prefixes: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_PREFIXES))
    """Relative path prefixes never reported."""

    report_dir: str = ".covdelta"
    """Directory for the intermediate summary and the downloaded baseline."""

    remap: bool = True
    """Apply source-map remapping before summarizing."""

    working_directory: str = ""
    """Prefix stripped from covered paths (empty = process working directory)."""


@dataclass
class CheckConfig:
    """Check run behaviour."""

    name: str = DEFAULT_CHECK_NAME
    """Check run name."""

    strict_baseline: bool = False
    """Fail when the base branch has no coverage artifact instead of comparing against 0%."""

    changed_files_only: bool = False
    """Only report files touched by the pull request."""


@dataclass
class CovDeltaConfig:
    """Top-level configuration."""

    root: str
    """Project root directory."""

    github: GitHubConfig = field(default_factory=GitHubConfig)
    coverage: CoverageConfig = field(default_factory=CoverageConfig)
    check: CheckConfig = field(default_factory=CheckConfig)

    raw: dict[str, Any] = field(default_factory=dict)
    """Raw YAML after environment expansion."""

    @property
    def coverage_file(self) -> Path:
        """Coverage path resolved against the project root."""
        return Path(self.root) / self.coverage.path

    @property
    def working_directory(self) -> str:
        return self.coverage.working_directory or os.getcwd()


def _first(*values: Any) -> Any:
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def load_config(root: str | Path = ".") -> CovDeltaConfig:
    """Load the complete configuration.

    Precedence per key: action input, ``.covdelta.yml``, environment
    variable, default. A missing YAML file is fine.

    Raises:
        ConfigurationError: If a boolean value cannot be parsed.
    """
    root_path = Path(root).resolve()
    config_file = root_path / CONFIG_FILE_NAME

    raw: dict[str, Any] = {}
    if config_file.is_file():
        parsed = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            raw = _resolve_dict(parsed)

    github_raw = _section(raw, "github")
    github = GitHubConfig(
        token=str(
            _first(
                _action_input("github_token"),
                github_raw.get("token"),
                os.environ.get("GITHUB_TOKEN"),
            )
            or ""
        ),
        api_url=str(
            _first(github_raw.get("api_url"), os.environ.get("GITHUB_API_URL")) or GITHUB_API_BASE
        ),
    )

    coverage_raw = _section(raw, "coverage")
    excluded = _first(_action_input("excluded_prefixes"), coverage_raw.get("excluded_prefixes"))
    coverage = CoverageConfig(
        path=str(
            _first(
                _action_input("nyc_results"),
                coverage_raw.get("path"),
                os.environ.get("COVDELTA_COVERAGE_PATH"),
            )
            or ""
        ),
        excluded_prefixes=(
            _parse_list(excluded) if excluded is not None else list(DEFAULT_EXCLUDED_PREFIXES)
        ),
        report_dir=str(coverage_raw.get("report_dir", ".covdelta")),
        remap=_parse_bool(coverage_raw.get("remap"), default=True),
        working_directory=str(
            _first(
                _action_input("working_directory"),
                coverage_raw.get("working_directory"),
                os.environ.get("GITHUB_WORKSPACE"),
            )
            or ""
        ),
    )

    check_raw = _section(raw, "check")
    check = CheckConfig(
        name=str(_first(_action_input("check_name"), check_raw.get("name")) or DEFAULT_CHECK_NAME),
        strict_baseline=_parse_bool(
            _first(_action_input("strict_baseline"), check_raw.get("strict_baseline")),
            default=False,
        ),
        changed_files_only=_parse_bool(
            _first(_action_input("changed_files_only"), check_raw.get("changed_files_only")),
            default=False,
        ),
    )

    return CovDeltaConfig(
        root=str(root_path),
        github=github,
        coverage=coverage,
        check=check,
        raw=raw,
    )


def validate_config(config: CovDeltaConfig) -> list[str]:
    """Validate the configuration and return a list of error messages.

    Returns an empty list if the configuration is valid.
    """
    errors: list[str] = []

    if not config.github.token:
        errors.append("github.token is required (input github_token or GITHUB_TOKEN)")

    if not config.coverage.path:
        errors.append("coverage.path is required (input nyc_results or COVDELTA_COVERAGE_PATH)")

    if not config.check.name.strip():
        errors.append("check.name must not be empty")

    if not config.github.api_url.startswith(("http://", "https://")):
        errors.append(f"github.api_url must be an http(s) URL (got: {config.github.api_url})")

    return errors


def require_valid_config(config: CovDeltaConfig) -> CovDeltaConfig:
    """Return *config* unchanged, or raise when it cannot drive a run.

    Raises:
        ConfigurationError: Listing every validation error.
    """
    errors = validate_config(config)
    if errors:
        raise ConfigurationError("; ".join(errors))
    return config
