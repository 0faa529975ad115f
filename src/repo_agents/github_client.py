"""GitHub REST API client for repo-agents.

Handles token and GitHub App authentication (JWT → installation token),
rate limit tracking, and the async API operations the pipeline stages need.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from urllib.parse import quote

import httpx
import jwt as pyjwt

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
API_VERSION = "2022-11-28"

TOKEN_TTL_SECONDS = 3500
TOKEN_EXCHANGE_ATTEMPTS = 3

# Below this many remaining calls, requests queue behind one lock
RATE_LIMIT_RESERVE = 50


class GitHubClient:
    """Async GitHub API client.

    Authenticates with a plain ``token`` when given, otherwise with GitHub
    App credentials (``app_id`` + ``private_key``). The installation is
    resolved from ``owner``/``repo`` when ``installation_id`` is not set.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        app_id: str | None = None,
        private_key: str | None = None,
        installation_id: str | None = None,
        owner: str | None = None,
        repo: str | None = None,
        base_url: str = GITHUB_API,
    ):
        self.static_token = token
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self.owner = owner
        self.repo = repo
        self.base_url = base_url

        self._token: str | None = None
        self._token_expires_at: float = 0

        self._rate_limit_remaining: int = 5000
        self._rate_limit_reset: float = 0
        self._rate_limit_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "repo-agents/0.1.0",
            },
            timeout=30.0,
        )
        self._rate_limit_lock = asyncio.Lock()
        logger.debug("GitHub client started")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GitHubClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    # ── Authentication ────────────────────────────────────────────────────

    async def _ensure_token(self) -> str:
        """A token for API calls: the static token, or a cached installation token.

        Installation tokens live one hour; a fresh one is exchanged a minute
        before the cached one expires.
        """
        if self.static_token:
            return self.static_token
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token

        if not self.app_id or not self.private_key:
            raise RuntimeError(
                "GitHub credentials not configured. "
                "Set GITHUB_TOKEN, or GH_APP_ID and GH_APP_PRIVATE_KEY"
            )
        if not self.installation_id:
            self.installation_id = await self._find_installation_id()

        self._token = await self._exchange_installation_token()
        self._token_expires_at = time.time() + TOKEN_TTL_SECONDS
        logger.info("Obtained installation token for App %s", self.app_id)
        return self._token

    async def _exchange_installation_token(self) -> str:
        """POST the App JWT for an installation token, backing off on failure."""
        path = f"/app/installations/{self.installation_id}/access_tokens"
        resp: httpx.Response | None = None
        for attempt in range(1, TOKEN_EXCHANGE_ATTEMPTS + 1):
            resp = await self.client.post(
                path, headers={"Authorization": f"Bearer {self._generate_jwt()}"}
            )
            if resp.status_code == 201:
                return resp.json()["token"]
            if attempt == TOKEN_EXCHANGE_ATTEMPTS:
                break
            delay = 2 ** (attempt - 1)
            logger.warning(
                "Installation token exchange failed (%d, attempt %d/%d); retrying in %ds",
                resp.status_code,
                attempt,
                TOKEN_EXCHANGE_ATTEMPTS,
                delay,
            )
            await asyncio.sleep(delay)
        resp.raise_for_status()
        raise RuntimeError(f"Installation token exchange returned {resp.status_code}")

    def _generate_jwt(self) -> str:
        """App JWT, backdated for clock skew and valid for nine minutes."""
        issued = int(time.time()) - 10
        claims = {"iat": issued, "exp": issued + 550, "iss": self.app_id}
        return pyjwt.encode(claims, self.private_key, algorithm="RS256")

    async def _app_request(self, method: str, path: str) -> httpx.Response:
        """Request authenticated as the App itself (JWT, not installation)."""
        resp = await self.client.request(
            method, path, headers={"Authorization": f"Bearer {self._generate_jwt()}"}
        )
        resp.raise_for_status()
        return resp

    async def _find_installation_id(self) -> str:
        if not self.owner or not self.repo:
            raise RuntimeError("owner/repo required to resolve the App installation")
        resp = await self._app_request("GET", f"/repos/{self.owner}/{self.repo}/installation")
        return str(resp.json()["id"])

    async def get_app(self) -> dict:
        """Return the authenticated App's metadata (``slug``, ``name``, ...)."""
        resp = await self._app_request("GET", "/app")
        return resp.json()

    async def installation_token(self) -> str:
        return await self._ensure_token()

    async def _auth_headers(self) -> dict[str, str]:
        token = await self._ensure_token()
        return {"Authorization": f"Bearer {token}"}

    # ── Rate limits ───────────────────────────────────────────────────────

    def _update_rate_limit(self, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining:
            self._rate_limit_remaining = int(remaining)
        if reset:
            self._rate_limit_reset = float(reset)

        if self._rate_limit_remaining < 100:
            logger.warning(
                "GitHub API rate limit low: %d remaining (resets at %s)",
                self._rate_limit_remaining,
                datetime.fromtimestamp(self._rate_limit_reset, tz=timezone.utc).isoformat(),
            )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Authenticated request; serialized and delayed when quota runs low."""
        if self._rate_limit_lock and self._rate_limit_remaining <= RATE_LIMIT_RESERVE:
            async with self._rate_limit_lock:
                await self._wait_for_rate_limit_reset()
                return await self._do_request(method, path, **kwargs)
        return await self._do_request(method, path, **kwargs)

    async def _do_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = await self._auth_headers()
        headers.update(kwargs.pop("headers", {}))
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._update_rate_limit(resp)
        resp.raise_for_status()
        return resp

    async def _wait_for_rate_limit_reset(self) -> None:
        if self._rate_limit_remaining > 0:
            return
        wait = max(0, self._rate_limit_reset - time.time()) + 1
        logger.warning("Rate limit exhausted, sleeping %.1fs until reset", wait)
        await asyncio.sleep(wait)
        self._rate_limit_remaining = RATE_LIMIT_RESERVE + 1

    # ── Issues ────────────────────────────────────────────────────────────

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/issues/{issue_number}")
        return resp.json()

    async def list_issues(
        self,
        owner: str,
        repo: str,
        *,
        labels: str | None = None,
        state: str = "open",
        since: str | None = None,
        per_page: int = 100,
    ) -> list[dict]:
        """List issues (pull requests filtered out).

        Args:
            labels: Comma-separated label names.
            state: ``"open"``, ``"closed"``, or ``"all"``.
            since: ISO-8601 timestamp; only issues updated after it.
        """
        params: dict[str, str | int] = {"state": state, "per_page": per_page}
        if labels:
            params["labels"] = labels
        if since:
            params["since"] = since
        resp = await self._request("GET", f"/repos/{owner}/{repo}/issues", params=params)
        # GitHub returns PRs in the issues endpoint
        return [i for i in resp.json() if "pull_request" not in i]

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues",
            json={
                "title": title,
                "body": body,
                "labels": labels or [],
                "assignees": assignees or [],
            },
        )
        return resp.json()

    async def close_issue(
        self, owner: str, repo: str, issue_number: int, *, state_reason: str | None = None
    ) -> dict:
        payload: dict = {"state": "closed"}
        if state_reason:
            payload["state_reason"] = state_reason
        resp = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/issues/{issue_number}", json=payload
        )
        return resp.json()

    async def get_labels(self, owner: str, repo: str, issue_number: int) -> list[str]:
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/labels", params={"per_page": 100}
        )
        return [label["name"] for label in resp.json()]

    async def add_labels(self, owner: str, repo: str, issue_number: int, labels: list[str]) -> None:
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json={"labels": labels},
        )

    async def remove_label(self, owner: str, repo: str, issue_number: int, label: str) -> bool:
        """Remove one label. Returns False if the label was not present."""
        try:
            await self._request(
                "DELETE",
                f"/repos/{owner}/{repo}/issues/{issue_number}/labels/{quote(label, safe='')}",
            )
            return True
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return False
            raise

    async def comment_on_issue(self, owner: str, repo: str, issue_number: int, body: str) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        return resp.json()

    async def update_comment(self, owner: str, repo: str, comment_id: int, body: str) -> dict:
        resp = await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/comments/{comment_id}",
            json={"body": body},
        )
        return resp.json()

    async def list_blocked_by(self, owner: str, repo: str, issue_number: int) -> list[dict]:
        """Issues that block *issue_number*."""
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/dependencies/blocked_by"
        )
        return resp.json()

    async def list_blocking(self, owner: str, repo: str, issue_number: int) -> list[dict]:
        """Issues that *issue_number* blocks."""
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}/dependencies/blocking"
        )
        return resp.json()

    async def search_issues(self, query: str, *, per_page: int = 1) -> dict:
        """Run an issue/PR search. Returns the raw result with ``total_count``."""
        resp = await self._request(
            "GET", "/search/issues", params={"q": query, "per_page": per_page}
        )
        return resp.json()

    # ── Pull requests ─────────────────────────────────────────────────────

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: str = "open",
        head: str | None = None,
        per_page: int = 100,
    ) -> list[dict]:
        """List pull requests.

        Args:
            head: Only PRs from this branch, as ``owner:branch``.
        """
        params: dict[str, str | int] = {"state": state, "per_page": per_page}
        if head:
            params["head"] = head
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
        return resp.json()

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return resp.json()

    async def close_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request(
            "PATCH", f"/repos/{owner}/{repo}/pulls/{pr_number}", json={"state": "closed"}
        )
        return resp.json()

    async def merge_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request("PUT", f"/repos/{owner}/{repo}/pulls/{pr_number}/merge")
        return resp.json()

    # ── Branches and contents ─────────────────────────────────────────────

    async def get_default_branch(self, owner: str, repo: str) -> str:
        resp = await self._request("GET", f"/repos/{owner}/{repo}")
        return resp.json()["default_branch"]

    async def get_branch_sha(self, owner: str, repo: str, branch: str) -> str | None:
        """Head commit of *branch*, or None if it does not exist."""
        try:
            resp = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return resp.json()["object"]["sha"]

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> dict:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        return resp.json()

    async def delete_branch(self, owner: str, repo: str, branch: str) -> bool:
        """Delete a branch. Returns False if it did not exist."""
        try:
            await self._request("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
            logger.info("Deleted branch %s/%s:%s", owner, repo, branch)
            return True
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 422:  # Reference does not exist
                return False
            raise

    async def get_file_sha(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        """Blob SHA of *path* on *ref*, or None if the file does not exist."""
        try:
            resp = await self._request(
                "GET", f"/repos/{owner}/{repo}/contents/{quote(path)}", params={"ref": ref}
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        data = resp.json()
        return data.get("sha") if isinstance(data, dict) else None

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        *,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> dict:
        """Create or update one file with a single commit on *branch*.

        ``sha`` is the current blob SHA and is required when the file exists.
        """
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha:
            payload["sha"] = sha
        resp = await self._request(
            "PUT", f"/repos/{owner}/{repo}/contents/{quote(path)}", json=payload
        )
        return resp.json()

    # ── Teams ─────────────────────────────────────────────────────────────

    async def get_team_membership(self, org: str, team_slug: str, username: str) -> dict | None:
        """Return the membership record, or None if the user is not a member."""
        try:
            resp = await self._request(
                "GET", f"/orgs/{org}/teams/{team_slug}/memberships/{username}"
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return resp.json()

    # ── Actions ───────────────────────────────────────────────────────────

    async def list_artifacts(
        self, owner: str, repo: str, *, name: str | None = None, per_page: int = 30
    ) -> list[dict]:
        """List workflow artifacts, newest first, optionally by exact name."""
        params: dict[str, str | int] = {"per_page": per_page}
        if name:
            params["name"] = name
        resp = await self._request(
            "GET", f"/repos/{owner}/{repo}/actions/artifacts", params=params
        )
        return resp.json().get("artifacts", [])


def client_from_settings(settings) -> GitHubClient:
    """Build a client for the repository in *settings*.

    App credentials win over plain tokens so mutations are attributed to the
    App identity, unless preflight already fell back to the token.
    """
    creds = settings.credentials
    owner, repo = settings.owner_repo
    if creds.use_app:
        return GitHubClient(
            app_id=creds.app_id, private_key=creds.app_private_key, owner=owner, repo=repo
        )
    return GitHubClient(token=creds.token, owner=owner, repo=repo)
