from __future__ import annotations


class CITriageError(Exception):
    """Base class for errors raised by the triage pipeline."""


class ClaimError(CITriageError):
    """The exclusive claim transaction failed; no record was mutated."""


class CollaboratorError(CITriageError):
    """A diagnosis/solution collaborator failed and the run must abort."""


class LogDownloadError(CITriageError):
    """Log retrieval failed after exhausting retries (or on a non-transient error)."""


class OutboxError(CITriageError):
    """Staging or dispatching an outbound action failed."""


class GitHubAuthError(CITriageError):
    """No authenticated GitHub client could be resolved."""
