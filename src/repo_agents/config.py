"""Runtime settings for repo-agents.

Reads the optional ``.github/repo-agents.yaml`` project file and applies
GitHub Actions environment variables on top of it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

SETTINGS_FILE = ".github/repo-agents.yaml"

DEFAULT_BOT_IDENTITY = "github-actions[bot]"


class Credentials(BaseModel):
    """Secrets pulled from the environment. Never written to artifacts."""

    github_token: str | None = None
    fallback_token: str | None = None
    app_id: str | None = None
    app_private_key: str | None = None
    anthropic_api_key: str | None = None
    claude_oauth_token: str | None = None
    # "app" or "token", as settled by the global preflight
    token_source: str | None = None

    @property
    def has_ai_credential(self) -> bool:
        return bool(self.anthropic_api_key or self.claude_oauth_token)

    @property
    def has_app_credentials(self) -> bool:
        return bool(self.app_id and self.app_private_key)

    @property
    def use_app(self) -> bool:
        """App credentials are set and preflight did not fall back to a token."""
        return self.has_app_credentials and self.token_source != "token"

    @property
    def token(self) -> str | None:
        """Plain token used when no App installation token is available."""
        return self.fallback_token or self.github_token


class Settings(BaseModel):
    agents_dir: str = ".github/agents"
    workflow_path: str = ".github/workflows/ai-agents.yml"
    workflow_name: str = "AI Agents"
    artifacts_dir: str = "/tmp/repo-agents"
    automation_identities: list[str] = Field(default_factory=list)
    require_explicit_authorization: bool = False
    runner: str = "ubuntu-latest"
    cli_command: str = "repo-agents"
    # pip requirement installed in every generated job
    package_spec: str = "repo-agents"
    python_version: str = "3.12"

    # Populated from the environment
    repository: str | None = None
    run_id: str | None = None
    server_url: str = "https://github.com"
    credentials: Credentials = Field(default_factory=Credentials, exclude=True)

    @property
    def owner_repo(self) -> tuple[str, str]:
        if not self.repository or "/" not in self.repository:
            raise ValueError("GITHUB_REPOSITORY is not set (expected 'owner/repo')")
        owner, _, repo = self.repository.partition("/")
        return owner, repo

    @property
    def run_url(self) -> str | None:
        if not self.repository or not self.run_id:
            return None
        return f"{self.server_url}/{self.repository}/actions/runs/{self.run_id}"

    def agents_path(self, repo_root: Path) -> Path:
        return repo_root / self.agents_dir


def load_settings(repo_root: str | Path = ".", env: Mapping[str, str] | None = None) -> Settings:
    """Load settings for the repository at *repo_root*.

    Args:
        repo_root: Repository checkout root.
        env: Environment mapping; defaults to ``os.environ``.

    Raises:
        ValueError: If the settings file is malformed or fails validation.
    """
    env = os.environ if env is None else env
    path = Path(repo_root) / SETTINGS_FILE

    raw: dict = {}
    if path.exists():
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Malformed settings file {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Settings file {path} must be a mapping")

    try:
        settings = Settings(**raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings in {path}: {exc}") from exc

    # Environment overrides
    if env.get("REPO_AGENTS_AGENTS_DIR"):
        settings.agents_dir = env["REPO_AGENTS_AGENTS_DIR"]
    if env.get("REPO_AGENTS_ARTIFACTS_DIR"):
        settings.artifacts_dir = env["REPO_AGENTS_ARTIFACTS_DIR"]
    settings.repository = env.get("GITHUB_REPOSITORY") or settings.repository
    settings.run_id = env.get("GITHUB_RUN_ID") or settings.run_id
    if env.get("GITHUB_SERVER_URL"):
        settings.server_url = env["GITHUB_SERVER_URL"]

    settings.credentials = Credentials(
        github_token=env.get("GITHUB_TOKEN") or None,
        fallback_token=env.get("FALLBACK_TOKEN") or None,
        app_id=env.get("GH_APP_ID") or None,
        app_private_key=env.get("GH_APP_PRIVATE_KEY") or None,
        anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
        claude_oauth_token=env.get("CLAUDE_CODE_OAUTH_TOKEN") or None,
        token_source=env.get("REPO_AGENTS_TOKEN_SOURCE") or None,
    )

    logger.debug("Loaded settings: agents_dir=%s repository=%s", settings.agents_dir, settings.repository)
    return settings
