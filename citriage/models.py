from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class FailureStatus(str, Enum):
    new = "new"
    analyzing = "analyzing"
    proposed = "proposed"
    applied = "applied"
    skipped = "skipped"


class FailureRecord(BaseModel):
    """
    One CI failure under triage (a row of `build_failures`).
    Created `new` by ingestion; the claimer moves it to `analyzing`.
    """

    failure_id: int
    run_id: Optional[str] = None
    repo_owner: str
    repo_name: str
    pr_number: Optional[int] = None
    commit_sha: str
    installation_id: Optional[int] = None
    log_content: Optional[str] = None
    norm_tail: Optional[str] = None
    error_signature_v1: Optional[str] = None
    error_signature_v2: Optional[str] = None
    status: FailureStatus = FailureStatus.new
    failure_timestamp: Optional[datetime] = None


# ---------------------------------------------------------------- diagnosis


class StructuredDiagnosis(BaseModel):
    error_signature: str = ""
    error_class: str = ""
    message: str = ""
    file_hint: str = ""
    failing_test: str = ""
    keywords: List[str] = Field(default_factory=list)


class SimilarFailure(BaseModel):
    failure_id: int
    pr_number: Optional[int] = None
    commit_sha: str
    failure_timestamp: Optional[datetime] = None
    error_signature_v1: Optional[str] = None
    error_signature_v2: Optional[str] = None
    match_on: Literal["v1", "v2"]


class SimilarSolution(BaseModel):
    id: int
    failure_id: Optional[int] = None
    pr_number: Optional[int] = None
    head_sha: Optional[str] = None
    summary_one_liner: Optional[str] = None
    rationale: Optional[str] = None
    similarity: float = 0.0


class Diagnosis(BaseModel):
    """Immutable output of one Diagnose step."""

    model_config = {"frozen": True}

    window: str
    structured: StructuredDiagnosis
    similar_failures: List[SimilarFailure] = Field(default_factory=list)
    similar_solutions: List[SimilarSolution] = Field(default_factory=list)
    messages: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------- solution


class MatchKind(str, Enum):
    exact = "exact"
    regex = "regex"
    nearest_changed_hunk = "nearest_changed_hunk"


class MatchHint(BaseModel):
    kind: MatchKind = MatchKind.nearest_changed_hunk
    original: str = ""
    pattern: str = ""


class ChangeValidation(BaseModel):
    applies_cleanly: bool = True
    is_noop: bool = False


class ChangeType(str, Enum):
    fix = "fix"
    diagnosis = "diagnosis"


class Change(BaseModel):
    path: str
    anchor_line: Optional[int] = None
    after: str = ""
    language: Optional[str] = None
    match: Optional[MatchHint] = None
    validation: ChangeValidation = Field(default_factory=ChangeValidation)
    type: ChangeType = ChangeType.diagnosis

    @property
    def is_real_fix(self) -> bool:
        return self.validation.applies_cleanly and not self.validation.is_noop


class Risk(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class SolutionSummary(BaseModel):
    one_liner: str = ""
    rationale: str = ""
    risk: Risk = Risk.low
    confidence: float = 0.0
    references: List[str] = Field(default_factory=list)


class ToolInvocation(BaseModel):
    name: str
    args_preview: str = ""
    ms: int = 0
    ok: bool = False


class PolicyDecision(BaseModel):
    auto_suggestion_eligible: bool = False
    reason: str = ""


class ReviewComment(BaseModel):
    path: str
    line: int
    body: str
    side: str = "RIGHT"


class ReviewArtifacts(BaseModel):
    markdown: str = ""
    comments: List[ReviewComment] = Field(default_factory=list)


class SolutionResult(BaseModel):
    summary: SolutionSummary = Field(default_factory=SolutionSummary)
    changes: List[Change] = Field(default_factory=list)
    tool_invocations: List[ToolInvocation] = Field(default_factory=list)
    policy: PolicyDecision = Field(default_factory=PolicyDecision)
    review: ReviewArtifacts = Field(default_factory=ReviewArtifacts)

    @property
    def confidence(self) -> float:
        return self.summary.confidence


# ---------------------------------------------------------------- outbox


class ActionType(str, Enum):
    pr_review = "pr_review"


class ActionStatus(str, Enum):
    staged = "staged"
    dispatching = "dispatching"
    dispatched = "dispatched"
    error = "error"


class ReviewPayload(BaseModel):
    type: ActionType = ActionType.pr_review
    owner: str
    repo: str
    pull_number: int
    event: str = "COMMENT"
    body: str
    comments: List[ReviewComment] = Field(default_factory=list)


class OutboundAction(BaseModel):
    id: int
    action_hash: str
    action_type: ActionType
    repo_owner: str
    repo_name: str
    pull_number: int
    head_sha: str
    installation_id: Optional[int] = None
    payload_json: str
    status: ActionStatus = ActionStatus.staged
    attempt_count: int = 0
    last_error: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def payload(self) -> ReviewPayload:
        return ReviewPayload.model_validate_json(self.payload_json)


class StageResult(BaseModel):
    ok: bool
    action_hash: Optional[str] = None
    already: bool = False
    error: Optional[str] = None


class DispatchResult(BaseModel):
    id: int
    ok: bool
    skipped: bool = False
    demoted_comments: int = 0
    error: Optional[str] = None


class RunOutcome(BaseModel):
    failure_id: int
    ok: bool
    loops: int = 0
    final_state: str
    action_hash: Optional[str] = None
    confidence: Optional[float] = None
    trace: List[str] = Field(default_factory=list)
    error: Optional[str] = None
