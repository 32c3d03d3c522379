from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

import httpx

from citriage.errors import GitHubAuthError
from citriage.gitops.github_rest import GitHubRestClient
from citriage.settings import Settings


@dataclass(frozen=True)
class GitHubClientFactory:
    """
    Resolves an authenticated `GitHubRestClient` for an installation or a repository.

    With an app JWT configured, installation tokens are exchanged through the App API
    (`POST /app/installations/{id}/access_tokens`, `GET /repos/{owner}/{repo}/installation`).
    Without one, the static token is used for every repository.
    """

    api_base: str = "https://api.github.com"
    token: str | None = None
    app_jwt: str | None = None
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> "GitHubClientFactory":
        return cls(
            api_base=settings.github_api_base,
            token=settings.github_token,
            app_jwt=settings.github_app_jwt,
            timeout_s=settings.github_timeout_s,
            transport=transport,
        )

    def _client(self, token: str) -> GitHubRestClient:
        return GitHubRestClient(token=token, api_base=self.api_base, timeout_s=self.timeout_s, transport=self.transport)

    def _app_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.app_jwt}", "Accept": "application/vnd.github+json"}

    def for_installation(self, installation_id: int) -> GitHubRestClient:
        if not self.app_jwt:
            if self.token:
                return self._client(self.token)
            raise GitHubAuthError("no GitHub credentials configured (github_app_jwt or github_token)")
        url = f"{self.api_base}/app/installations/{int(installation_id)}/access_tokens"
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as c:
            r = c.post(url, headers=self._app_headers())
            if r.status_code != 201 and r.status_code != 200:
                raise GitHubAuthError(f"installation_token_http_{r.status_code}: {r.text[:500]}")
            token = (r.json() or {}).get("token")
        if not token:
            raise GitHubAuthError(f"installation {installation_id} returned no token")
        return self._client(str(token))

    def for_repo(self, owner: str, repo: str) -> GitHubRestClient:
        if not self.app_jwt:
            if self.token:
                return self._client(self.token)
            raise GitHubAuthError("no GitHub credentials configured (github_app_jwt or github_token)")
        url = f"{self.api_base}/repos/{owner}/{repo}/installation"
        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as c:
            r = c.get(url, headers=self._app_headers())
            if r.status_code != 200:
                raise GitHubAuthError(f"repo_installation_http_{r.status_code}: {r.text[:500]}")
            inst = (r.json() or {}).get("id")
        if inst is None:
            raise GitHubAuthError(f"no installation found for {owner}/{repo}")
        return self.for_installation(int(inst))

    def for_context(self, owner: str, repo: str, installation_id: int | None = None) -> GitHubRestClient:
        """Try the recorded installation first; a stale or missing id falls back to repo lookup."""
        if installation_id is not None:
            try:
                return self.for_installation(installation_id)
            except (GitHubAuthError, httpx.HTTPError):
                pass
        return self.for_repo(owner, repo)
