from __future__ import annotations

from typing import Iterable, List

from citriage.models import Change, PolicyDecision, Risk


def real_fixes(changes: Iterable[Change]) -> List[Change]:
    """Changes that both apply cleanly and actually alter the code."""
    return [c for c in changes if c.is_real_fix]


def evaluate_policy(*, confidence: float, risk: Risk, changes: List[Change], tau: float) -> PolicyDecision:
    """
    Inline-applicable suggestions are allowed only when the whole change set qualifies:
    confidence at or above tau, low risk, every change applies cleanly, and at least one
    real fix. Anything less degrades the entire review to comment-only.
    """
    reasons: List[str] = []
    if confidence < tau:
        reasons.append(f"confidence {confidence:.2f} below threshold {tau:.2f}")
    if risk != Risk.low:
        reasons.append(f"risk is {risk.value}")
    unclean = [c.path for c in changes if not c.validation.applies_cleanly]
    if unclean:
        reasons.append(f"{len(unclean)} change(s) do not apply cleanly")
    if not real_fixes(changes):
        reasons.append("no real fix (only diagnostics or no-op changes)")

    if reasons:
        return PolicyDecision(auto_suggestion_eligible=False, reason="; ".join(reasons))
    return PolicyDecision(auto_suggestion_eligible=True, reason="High confidence & low risk with clean patches.")
