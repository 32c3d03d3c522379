from __future__ import annotations

import base64
import json
from typing import Any, Dict, List

import httpx
import pytest

from citriage.errors import GitHubAuthError
from citriage.gitops.auth import GitHubClientFactory
from citriage.gitops.github_rest import GitHubRestClient


def _make_transport(seen: List[httpx.Request]) -> httpx.MockTransport:
    files = [{"filename": f"f{i}.py", "status": "modified", "patch": "@@ -1 +1 @@\n-a\n+b"} for i in range(103)]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        path = request.url.path
        method = request.method.upper()

        if method == "GET" and path == "/repos/owner/repo/pulls/7/files":
            page = int(request.url.params.get("page", "1"))
            return httpx.Response(200, json=files[(page - 1) * 100 : page * 100])

        if method == "GET" and path == "/repos/owner/repo/contents/src/app.py":
            assert request.url.params.get("ref") == "HEAD1"
            content = base64.b64encode(b"print('hi')\n").decode()
            return httpx.Response(200, json={"type": "file", "content": content, "encoding": "base64"})

        if method == "GET" and path.startswith("/repos/owner/repo/contents/"):
            return httpx.Response(404, json={"message": "Not Found"})

        if method == "GET" and path == "/search/code":
            assert request.url.params.get("q") == "load_config repo:owner/repo"
            return httpx.Response(200, json={"items": [{"path": "src/config.py", "sha": "s", "score": 1.0, "html_url": "u"}]})

        if method == "POST" and path == "/repos/owner/repo/pulls/7/reviews":
            body = json.loads(request.content.decode("utf-8"))
            return httpx.Response(200, json={"id": 555, "body": body["body"], "commit_id": body.get("commit_id")})

        if method == "GET" and path == "/repos/owner/repo/actions/runs":
            return httpx.Response(200, json={"workflow_runs": [{"id": 1, "event": request.url.params.get("event")}]})

        if method == "GET" and path == "/repos/owner/repo/actions/runs/1/logs":
            return httpx.Response(302, headers={"Location": "https://blobs.example.com/logs.zip"})

        if method == "GET" and request.url.host == "blobs.example.com":
            return httpx.Response(200, content=b"ZIPBYTES")

        return httpx.Response(404, json={"message": f"unhandled {method} {path}"})

    return httpx.MockTransport(handler)


def test_rest_client_read_calls() -> None:
    seen: List[httpx.Request] = []
    c = GitHubRestClient(token="t", transport=_make_transport(seen))

    files = c.list_pr_files(owner="owner", repo="repo", pull_number=7)
    assert len(files) == 103
    assert files[0]["patch"].startswith("@@")

    assert c.get_file_content(owner="owner", repo="repo", path="src/app.py", ref="HEAD1") == "print('hi')\n"
    assert c.get_file_content(owner="owner", repo="repo", path="missing.py", ref="HEAD1") is None

    hits = c.search_code(owner="owner", repo="repo", query="load_config")
    assert hits == [{"path": "src/config.py", "sha": "s", "score": 1.0, "url": "u"}]

    runs = c.list_workflow_runs(owner="owner", repo="repo", event="pull_request", head_sha="HEAD1")
    assert runs[0]["event"] == "pull_request"

    assert c.download_run_logs(owner="owner", repo="repo", run_id=1) == b"ZIPBYTES"
    assert all(r.headers["Authorization"] == "Bearer t" for r in seen if r.url.host == "api.github.com")


def test_create_review_posts_single_payload() -> None:
    seen: List[httpx.Request] = []
    c = GitHubRestClient(token="t", transport=_make_transport(seen))
    out = c.create_review(
        owner="owner",
        repo="repo",
        pull_number=7,
        body="summary",
        comments=[{"path": "a.py", "line": 3, "body": "x", "side": "RIGHT"}],
        commit_id="HEAD1",
    )
    assert out["id"] == 555
    sent: Dict[str, Any] = json.loads(seen[-1].content.decode("utf-8"))
    assert sent["event"] == "COMMENT"
    assert sent["commit_id"] == "HEAD1"
    assert sent["comments"][0]["line"] == 3


def test_create_review_raises_on_http_error() -> None:
    transport = httpx.MockTransport(lambda r: httpx.Response(422, json={"message": "line must be part of the diff"}))
    c = GitHubRestClient(token="t", transport=transport)
    with pytest.raises(httpx.HTTPStatusError):
        c.create_review(owner="o", repo="r", pull_number=1, body="b", comments=[])


def _app_transport(stale_installation: int | None = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.startswith("/app/installations/"):
            assert request.headers["Authorization"] == "Bearer APPJWT"
            inst = int(path.split("/")[3])
            if inst == stale_installation:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(201, json={"token": f"inst-{inst}"})
        if request.method == "GET" and path == "/repos/acme/web/installation":
            return httpx.Response(200, json={"id": 31})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def test_factory_uses_static_token_without_app_credentials() -> None:
    f = GitHubClientFactory(token="pat")
    assert f.for_context("acme", "web", 5).token == "pat"


def test_factory_without_any_credentials_fails() -> None:
    with pytest.raises(GitHubAuthError):
        GitHubClientFactory().for_repo("acme", "web")


def test_factory_exchanges_installation_token() -> None:
    f = GitHubClientFactory(app_jwt="APPJWT", transport=_app_transport())
    assert f.for_installation(12).token == "inst-12"
    assert f.for_context("acme", "web", None).token == "inst-31"


def test_factory_falls_back_to_repo_lookup_for_stale_installation() -> None:
    f = GitHubClientFactory(app_jwt="APPJWT", transport=_app_transport(stale_installation=12))
    assert f.for_context("acme", "web", 12).token == "inst-31"
