"""global-preflight: fail closed before any agent work starts."""

from __future__ import annotations

import logging

import httpx
import jwt
from pydantic import BaseModel

from repo_agents.actions import mask
from repo_agents.config import DEFAULT_BOT_IDENTITY, Settings
from repo_agents.errors import PreflightError
from repo_agents.github_client import GitHubClient

logger = logging.getLogger(__name__)

DEFAULT_BOT_EMAIL = "41898282+github-actions[bot]@users.noreply.github.com"


class PreflightResult(BaseModel):
    token_source: str  # "app" or "token"
    automation_identity: str = DEFAULT_BOT_IDENTITY
    git_user: str = DEFAULT_BOT_IDENTITY
    git_email: str = DEFAULT_BOT_EMAIL

    def outputs(self) -> dict[str, str]:
        return {
            "automation-identity": self.automation_identity,
            "git-user": self.git_user,
            "git-email": self.git_email,
            "token-source": self.token_source,
        }


async def app_identity(client: GitHubClient) -> PreflightResult:
    """Exchange App credentials for a token and derive the App's bot identity."""
    mask(await client.installation_token())
    app = await client.get_app()
    user = f"{app['slug']}[bot]"
    return PreflightResult(
        token_source="app",
        automation_identity=user,
        git_user=user,
        git_email=f"{app['id']}+{user}@users.noreply.github.com",
    )


async def run_preflight(settings: Settings) -> PreflightResult:
    """Check the AI-backend credential and resolve the automation identity.

    Raises:
        PreflightError: If no AI-backend credential is configured.
    """
    creds = settings.credentials
    if not creds.has_ai_credential:
        raise PreflightError(
            "Missing AI backend credential: set ANTHROPIC_API_KEY or CLAUDE_CODE_OAUTH_TOKEN"
        )
    logger.info("AI backend credential configured")

    if creds.has_app_credentials:
        owner, repo = settings.owner_repo
        try:
            async with GitHubClient(
                app_id=creds.app_id, private_key=creds.app_private_key, owner=owner, repo=repo
            ) as client:
                result = await app_identity(client)
            logger.info("Using GitHub App identity %s", result.automation_identity)
            return result
        except (httpx.HTTPError, jwt.PyJWTError, RuntimeError, KeyError, ValueError) as exc:
            logger.warning("GitHub App token generation failed, falling back to token: %s", exc)

    if not creds.token:
        logger.warning("No GITHUB_TOKEN or FALLBACK_TOKEN available; platform calls will fail")
    return PreflightResult(token_source="token")
