from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from citriage.gitops.github_rest import GitHubRestClient


TOOL_SPECS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "list_pr_files",
            "description": "List files changed in the pull request, with their unified-diff patches.",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "fetch_slice",
            "description": "Fetch a 1-based inclusive line range of a file at the PR head commit.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "start_line": {"type": "integer", "minimum": 1},
                    "end_line": {"type": "integer", "minimum": 1},
                },
                "required": ["path"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "code_search",
            "description": "Search code in the repository by query string.",
            "parameters": {
                "type": "object",
                "properties": {"query": {"type": "string"}, "max_results": {"type": "integer", "minimum": 1}},
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    },
]

MAX_PATCH_CHARS = 6000
MAX_SLICE_SPAN = 400


@dataclass
class RepoTools:
    """
    The three read-only repository tools exposed to the model during Solve, bound to one
    PR at one head commit. PR files and file contents are cached for the lifetime of the
    instance so that validation after the tool loop reuses what the model already fetched.
    """

    gh: GitHubRestClient
    owner: str
    repo: str
    pull_number: int | None
    head_sha: str
    default_span: int = 80
    _pr_files: Optional[List[Dict[str, Any]]] = field(default=None, repr=False)
    _contents: Dict[str, Optional[str]] = field(default_factory=dict, repr=False)

    def handlers(self) -> Dict[str, Callable[..., Dict[str, Any]]]:
        return {
            "list_pr_files": self.list_pr_files,
            "fetch_slice": self.fetch_slice,
            "code_search": self.code_search,
        }

    def pr_files(self) -> List[Dict[str, Any]]:
        if self._pr_files is None:
            if not self.pull_number:
                self._pr_files = []
            else:
                self._pr_files = self.gh.list_pr_files(owner=self.owner, repo=self.repo, pull_number=self.pull_number)
        return self._pr_files

    def file_text(self, path: str) -> Optional[str]:
        if path not in self._contents:
            self._contents[path] = self.gh.get_file_content(owner=self.owner, repo=self.repo, path=path, ref=self.head_sha)
        return self._contents[path]

    def list_pr_files(self) -> Dict[str, Any]:
        files = self.pr_files()
        return {
            "files": [
                {
                    "filename": f["filename"],
                    "status": f.get("status"),
                    "additions": f.get("additions"),
                    "deletions": f.get("deletions"),
                    "patch": (f.get("patch") or "")[:MAX_PATCH_CHARS],
                }
                for f in files
            ]
        }

    def fetch_slice(self, path: str, start_line: int | None = None, end_line: int | None = None) -> Dict[str, Any]:
        text = self.file_text(path)
        if text is None:
            return {"error": "not_found", "path": path}
        lines = text.replace("\r\n", "\n").split("\n")
        start = max(1, int(start_line or 1))
        end = int(end_line or (start + self.default_span - 1))
        end = max(start, min(end, start + MAX_SLICE_SPAN - 1, len(lines)))
        numbered = "\n".join(f"{i}: {lines[i - 1]}" for i in range(start, end + 1) if i <= len(lines))
        return {"path": path, "start_line": start, "end_line": end, "total_lines": len(lines), "content": numbered}

    def code_search(self, query: str, max_results: int = 10) -> Dict[str, Any]:
        return {"query": query, "results": self.gh.search_code(owner=self.owner, repo=self.repo, query=query, max_results=max_results)}
