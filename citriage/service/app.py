from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from citriage.errors import ClaimError
from citriage.pipeline.runner import Pipeline, build_pipeline
from citriage.settings import Settings


class DispatchRequest(BaseModel):
    limit: Optional[int] = Field(default=None, ge=1, le=50)


class FailureIn(BaseModel):
    repo_owner: str
    repo_name: str
    commit_sha: str
    pr_number: Optional[int] = None
    run_id: Optional[str] = None
    installation_id: Optional[int] = None
    log_content: str = ""


def require_bearer(request: Request) -> None:
    """Shared-secret check for the trigger endpoints: `Authorization: Bearer <cron_secret>`."""
    settings: Settings = request.app.state.settings
    secret = settings.cron_secret
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if not secret or scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), secret.encode()):
        raise HTTPException(status_code=403, detail="forbidden")


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def create_app(settings: Settings | None = None, *, pipeline: Pipeline | None = None) -> FastAPI:
    """
    App factory used by uvicorn and tests. Tests pass their own Settings and, when they
    need fakes for the model or GitHub, a prebuilt Pipeline.
    """
    s = settings or Settings()
    app = FastAPI(title="citriage", version="0.1.0")
    app.state.settings = s
    app.state.pipeline = pipeline or build_pipeline(s)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "version": "0.1.0"}

    @app.post("/api/graph-run", dependencies=[Depends(require_bearer)])
    def graph_run(request: Request) -> JSONResponse:
        p = _pipeline(request)
        try:
            outcome = p.process_one_pending()
        except ClaimError as e:
            p.audit.write("graph-run", "claim.failed", {"error": str(e)[:1000]})
            return JSONResponse({"ok": False, "error": "claim_failed"}, status_code=500)
        if outcome is None:
            return JSONResponse({"ok": True, "msg": "idle"})
        body = outcome.model_dump(mode="json")
        return JSONResponse(body, status_code=200 if outcome.ok else 500)

    @app.post("/api/dispatch-outbox", dependencies=[Depends(require_bearer)])
    def dispatch_outbox(request: Request, req: Optional[DispatchRequest] = None) -> JSONResponse:
        p = _pipeline(request)
        limit = (req.limit if req else None) or p.settings.dispatch_batch_size
        results = p.dispatcher.dispatch_batch(limit, correlation_id=p.audit.new_correlation_id())
        return JSONResponse({"ok": True, "count": len(results), "results": [r.model_dump(mode="json") for r in results]})

    @app.post("/api/failures", dependencies=[Depends(require_bearer)])
    def enqueue_failure(request: Request, body: FailureIn) -> JSONResponse:
        p = _pipeline(request)
        fid = p.failures.log_build_failure(
            repo_owner=body.repo_owner,
            repo_name=body.repo_name,
            commit_sha=body.commit_sha,
            log_content=body.log_content,
            pr_number=body.pr_number,
            run_id=body.run_id,
            installation_id=body.installation_id,
        )
        p.audit.write("ingest", "failure.enqueued", {"failure_id": fid, "run_id": body.run_id})
        return JSONResponse({"ok": True, "failure_id": fid})

    @app.get("/api/recommendations", dependencies=[Depends(require_bearer)])
    def recommendations(request: Request, owner: str, repo: str, limit: int = 10) -> JSONResponse:
        p = _pipeline(request)
        rows = p.knowledge.recent(repo_owner=owner, repo_name=repo, limit=max(1, min(limit, 100)))
        return JSONResponse({"ok": True, "items": rows})

    return app
