from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class BudgetLimits:
    max_calls: int = 6
    max_ms: int = 10_000
    max_calls_per_tool: int = 3
    max_ms_per_tool: int = 5_000


@dataclass(frozen=True)
class BudgetGrant:
    granted: bool
    reason: str


class ToolBudgetGovernor:
    """
    Bounds tool use for the lifetime of one Solve invocation.

    Tracks global calls, global elapsed time (wall clock since the governor was created),
    and per-tool calls / accumulated per-tool time. `try_acquire` checks all four ceilings
    before a call; `record` books the call's duration afterwards.
    """

    def __init__(self, limits: BudgetLimits | None = None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limits = limits or BudgetLimits()
        self._clock = clock
        self._started = clock()
        self.calls = 0
        self.tool_calls: Dict[str, int] = {}
        self.tool_ms: Dict[str, int] = {}

    def elapsed_ms(self) -> int:
        return int((self._clock() - self._started) * 1000)

    def has_budget(self) -> bool:
        return self.calls < self.limits.max_calls and self.elapsed_ms() < self.limits.max_ms

    def try_acquire(self, tool_name: str) -> BudgetGrant:
        lim = self.limits
        if self.calls >= lim.max_calls:
            return BudgetGrant(False, f"global call budget exhausted ({self.calls}/{lim.max_calls})")
        elapsed = self.elapsed_ms()
        if elapsed >= lim.max_ms:
            return BudgetGrant(False, f"global time budget exhausted ({elapsed}ms/{lim.max_ms}ms)")
        n = self.tool_calls.get(tool_name, 0)
        if n >= lim.max_calls_per_tool:
            return BudgetGrant(False, f"{tool_name}: call budget exhausted ({n}/{lim.max_calls_per_tool})")
        ms = self.tool_ms.get(tool_name, 0)
        if ms >= lim.max_ms_per_tool:
            return BudgetGrant(False, f"{tool_name}: time budget exhausted ({ms}ms/{lim.max_ms_per_tool}ms)")
        self.calls += 1
        self.tool_calls[tool_name] = n + 1
        return BudgetGrant(True, "ok")

    def record(self, tool_name: str, elapsed_ms: int) -> None:
        self.tool_ms[tool_name] = self.tool_ms.get(tool_name, 0) + max(0, int(elapsed_ms))

    def exhausted_result(self, tool_name: str, reason: str) -> Dict[str, Any]:
        """Placeholder reply for a denied request."""
        return {
            "error": "budget_exhausted",
            "reason": reason,
            "used": {
                "global_calls": self.calls,
                "global_ms": self.elapsed_ms(),
                "tool_calls": self.tool_calls.get(tool_name, 0),
                "tool_ms": self.tool_ms.get(tool_name, 0),
            },
            "limits": {
                "global_calls": self.limits.max_calls,
                "global_ms": self.limits.max_ms,
                "tool_calls": self.limits.max_calls_per_tool,
                "tool_ms": self.limits.max_ms_per_tool,
            },
        }


@dataclass
class ToolRequest:
    call_id: str
    name: str
    args: Dict[str, Any]


@dataclass
class ToolResponse:
    content: Dict[str, Any]
    ok: bool
    ms: int = 0
    denied: bool = False


@dataclass
class ToolExchange:
    request: ToolRequest
    response: Optional[ToolResponse] = None


@dataclass
class ToolLedger:
    """
    Strict request/response ledger for the tool-calling conversation.

    Every request the model emits is opened here; the chat protocol requires exactly one
    reply per request before the next model turn, so `settle()` must leave no exchange open.
    """

    exchanges: List[ToolExchange] = field(default_factory=list)
    _auto_ids: int = 0

    def open(self, *, call_id: str | None, name: str, args: Dict[str, Any]) -> ToolRequest:
        if not call_id:
            self._auto_ids += 1
            call_id = f"call_auto_{self._auto_ids}"
        req = ToolRequest(call_id=call_id, name=name, args=args)
        self.exchanges.append(ToolExchange(request=req))
        return req

    def reply(self, call_id: str, response: ToolResponse) -> None:
        for ex in self.exchanges:
            if ex.request.call_id == call_id and ex.response is None:
                ex.response = response
                return
        raise KeyError(f"no open tool request with id {call_id}")

    def pending(self) -> List[ToolRequest]:
        return [ex.request for ex in self.exchanges if ex.response is None]

    def settle(self, reason: str = "unanswered_tool_call") -> int:
        """Reply to every open request with an error placeholder; returns how many were closed."""
        open_reqs = self.pending()
        for req in open_reqs:
            self.reply(req.call_id, ToolResponse(content={"error": reason}, ok=False))
        return len(open_reqs)

    def tool_messages(self, requests: List[ToolRequest]) -> List[Dict[str, Any]]:
        """Chat `tool` messages answering `requests`, in request order."""
        by_id = {ex.request.call_id: ex for ex in self.exchanges}
        out: List[Dict[str, Any]] = []
        for req in requests:
            resp = by_id[req.call_id].response
            if resp is None:
                raise RuntimeError(f"tool request {req.call_id} has no reply")
            out.append({"role": "tool", "tool_call_id": req.call_id, "content": json.dumps(resp.content, default=str)})
        return out
