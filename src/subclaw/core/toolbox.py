"""Built-in tool handlers for sub-agents."""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from subclaw.core.background import BackgroundJobManager
from subclaw.core.policy import ShellPolicy, run_shell
from subclaw.core.tools import ToolSpec, _schema
from subclaw.integrations.web import ImageAnalyzer, WebClient

logger = logging.getLogger("subclaw.toolbox")


def _require(tool_input: Dict[str, Any], key: str) -> str:
    value = tool_input.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"missing '{key}'")
    return str(value)


class Toolbox:
    def __init__(
        self,
        policy: Optional[ShellPolicy] = None,
        web: Optional[WebClient] = None,
        images: Optional[ImageAnalyzer] = None,
        shell_timeout: float = 60.0,
        workdir: Optional[str] = None,
    ) -> None:
        self.policy = policy or ShellPolicy()
        self.web = web or WebClient()
        self.images = images
        self.shell_timeout = shell_timeout
        self.workdir = workdir

    def _resolve(self, path: str) -> str:
        path = os.path.expanduser(path)
        if self.workdir and not os.path.isabs(path):
            return os.path.join(self.workdir, path)
        return path

    # ── Handlers ─────────────────────────────────────────────

    def shell(self, tool_input: Dict[str, Any]) -> str:
        result = run_shell(
            _require(tool_input, "command"), self.policy, timeout=self.shell_timeout, cwd=self.workdir
        )
        return result.combined() or "(empty output)"

    def search(self, tool_input: Dict[str, Any]) -> str:
        results = self.web.search(_require(tool_input, "query"))
        return "\n\n".join(
            f"{i + 1}. {r.title}\n   {r.url}\n   {r.snippet}" for i, r in enumerate(results)
        ) or "(no results)"

    def fetch(self, tool_input: Dict[str, Any]) -> str:
        page = self.web.fetch(_require(tool_input, "url"))
        return f"Title: {page.title}\n\n{page.content}"

    def read(self, tool_input: Dict[str, Any]) -> str:
        with open(self._resolve(_require(tool_input, "path")), "r", encoding="utf-8", errors="replace") as handle:
            return handle.read() or "(empty)"

    def write(self, tool_input: Dict[str, Any]) -> str:
        path = self._resolve(_require(tool_input, "path"))
        content = str(tool_input.get("content", ""))
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(content)
        return f"Written {len(content)} chars to {tool_input['path']}"

    def ls(self, tool_input: Dict[str, Any]) -> str:
        path = self._resolve(str(tool_input.get("path") or "."))
        entries = []
        for name in sorted(os.listdir(path)):
            suffix = "/" if os.path.isdir(os.path.join(path, name)) else ""
            entries.append(name + suffix)
        return "\n".join(entries) or "(empty directory)"

    def image(self, tool_input: Dict[str, Any]) -> str:
        if self.images is None:
            raise RuntimeError("image analysis not configured")
        source = tool_input.get("path") or tool_input.get("image") or tool_input.get("url")
        if not source:
            raise ValueError("missing 'path'")
        source = str(source)
        if not source.startswith(("http://", "https://", "data:")):
            source = self._resolve(source)
        return self.images.analyze(source, str(tool_input.get("prompt") or ""))

    def specs(self) -> List[ToolSpec]:
        return [
            ToolSpec("shell", "Execute a shell command on the server",
                     _schema({"command": {"type": "string", "description": "Shell command to execute"}}),
                     self.shell),
            ToolSpec("search", "Search the web",
                     _schema({"query": {"type": "string", "description": "Search query"}}),
                     self.search),
            ToolSpec("fetch", "Fetch webpage content",
                     _schema({"url": {"type": "string", "description": "URL to fetch"}}),
                     self.fetch),
            ToolSpec("read", "Read a file",
                     _schema({"path": {"type": "string", "description": "File path to read"}}),
                     self.read),
            ToolSpec("write", "Write content to a file",
                     _schema({
                         "path": {"type": "string", "description": "File path"},
                         "content": {"type": "string", "description": "File content"},
                     }),
                     self.write),
            ToolSpec("ls", "List directory contents",
                     _schema({"path": {"type": "string", "description": "Directory path"}}),
                     self.ls),
            ToolSpec("image", "Analyze an image file or URL",
                     _schema({
                         "path": {"type": "string", "description": "Image path or URL"},
                         "prompt": {"type": "string", "description": "What to analyze in the image"},
                     }, required=["path"]),
                     self.image),
        ]


def background_specs(manager: BackgroundJobManager) -> List[ToolSpec]:
    def start(tool_input: Dict[str, Any]) -> str:
        command = _require(tool_input, "command")
        condition = str(tool_input.get("condition") or "").strip() or None
        job_id = manager.start(command, condition)
        if job_id is None:
            return f"Error: too many background tasks running (max {manager.max_concurrent})"
        return f"Background task started: {job_id}. Use check_task to monitor."

    def check(tool_input: Dict[str, Any]) -> str:
        return manager.describe(_require(tool_input, "task_id"))

    return [
        ToolSpec(
            "background_task",
            "Run a long-running shell command in background (builds, installs, deploys). "
            "Use for commands that take >10 seconds. Returns a task ID to check later.",
            _schema({
                "command": {"type": "string", "description": "Shell command to run in background"},
                "condition": {
                    "type": "string",
                    "description": "Optional condition on the output (e.g. 'contains:error', '>=90').",
                },
            }, required=["command"]),
            start,
            kind="background",
        ),
        ToolSpec(
            "check_task",
            "Check the status of a background task. Returns status and output if completed.",
            _schema({"task_id": {"type": "string", "description": "Task ID from background_task"}}),
            check,
            kind="background",
        ),
    ]
