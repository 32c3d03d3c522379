from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


@dataclass(frozen=True)
class GitHubRestClient:
    """
    Minimal GitHub REST wrapper for PR triage.

    Read-only calls: PR files/patches, file content at a ref, code search, workflow runs,
    run log archives. The single write is `create_review`.

    This client is designed to be mockable in tests (httpx transport override).
    """

    token: str
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _client(self, *, follow_redirects: bool = False) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport, follow_redirects=follow_redirects)

    def list_pr_files(self, *, owner: str, repo: str, pull_number: int, max_files: int = 300) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/repos/{owner}/{repo}/pulls/{pull_number}/files"
        out: List[Dict[str, Any]] = []
        page = 1
        with self._client() as c:
            while len(out) < max_files:
                r = c.get(url, headers=self._headers(), params={"per_page": 100, "page": page})
                r.raise_for_status()
                data = r.json() or []
                for f in data:
                    out.append(
                        {
                            "filename": str(f.get("filename") or ""),
                            "status": f.get("status"),
                            "additions": f.get("additions"),
                            "deletions": f.get("deletions"),
                            "changes": f.get("changes"),
                            # patch is omitted by GitHub for very large diffs
                            "patch": f.get("patch"),
                        }
                    )
                if len(data) < 100:
                    break
                page += 1
        return out[:max_files]

    def get_file_content(self, *, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        url = f"{self.api_base}/repos/{owner}/{repo}/contents/{path.lstrip('/')}"
        with self._client() as c:
            r = c.get(url, headers=self._headers(), params={"ref": ref})
            if r.status_code == 404:
                return None
            r.raise_for_status()
            data = r.json()
        if not isinstance(data, dict) or "content" not in data:
            # directory listing or submodule
            return None
        return base64.b64decode(str(data["content"])).decode("utf-8", errors="replace")

    def search_code(self, *, owner: str, repo: str, query: str, max_results: int = 10) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/search/code"
        params = {"q": f"{query} repo:{owner}/{repo}", "per_page": max(1, min(int(max_results), 50))}
        with self._client() as c:
            r = c.get(url, headers=self._headers(), params=params)
            r.raise_for_status()
            data = r.json() or {}
        return [
            {"path": it.get("path"), "sha": it.get("sha"), "score": it.get("score"), "url": it.get("html_url")}
            for it in (data.get("items") or [])
        ]

    def create_review(
        self,
        *,
        owner: str,
        repo: str,
        pull_number: int,
        body: str,
        comments: List[Dict[str, Any]],
        event: str = "COMMENT",
        commit_id: str | None = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_base}/repos/{owner}/{repo}/pulls/{pull_number}/reviews"
        payload: Dict[str, Any] = {"event": event, "body": body, "comments": comments}
        if commit_id:
            payload["commit_id"] = commit_id
        with self._client() as c:
            r = c.post(url, headers=self._headers(), json=payload)
            r.raise_for_status()
            return r.json() or {}

    def list_workflow_runs(self, *, owner: str, repo: str, event: str, head_sha: str | None = None) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/repos/{owner}/{repo}/actions/runs"
        params: Dict[str, Any] = {"event": event, "per_page": 100}
        if head_sha:
            params["head_sha"] = head_sha
        with self._client() as c:
            r = c.get(url, headers=self._headers(), params=params)
            r.raise_for_status()
            data = r.json() or {}
        return list(data.get("workflow_runs") or [])

    def download_run_logs(self, *, owner: str, repo: str, run_id: int) -> bytes:
        # GitHub answers with a 302 to a short-lived archive URL.
        url = f"{self.api_base}/repos/{owner}/{repo}/actions/runs/{run_id}/logs"
        with self._client(follow_redirects=True) as c:
            r = c.get(url, headers=self._headers())
            r.raise_for_status()
            return r.content
