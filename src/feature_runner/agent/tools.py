"""Workspace tools the agent may call.

The set of tool kinds is closed (`ToolKind`). Each kind has one `Tool`
implementation exposing `name`, `validate` and `execute`; dispatch is a
dictionary lookup. Every path argument is resolved against the workspace root
and rejected if it escapes it.
"""

from __future__ import annotations

import asyncio
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, ClassVar, Iterator, Optional

from loguru import logger

from ..constants import DEFAULT_COMMAND_TIMEOUT_SECONDS, SEARCH_MAX_MATCHES, TOOL_OUTPUT_LIMIT
from ..domain.models import ToolKind
from ..errors import ToolNotPermitted, ToolValidationError
from ..logging_utils import truncate
from .provider import ToolUseRequest

SKIP_DIRS = frozenset({".git", "node_modules", "__pycache__", ".venv"})
LIST_LIMIT = 1000


@dataclass(frozen=True)
class ToolResult:
    output: str
    is_error: bool = False


def resolve_in_root(root: Path, relative: str, *, tool: str) -> Path:
    root = root.resolve()
    candidate = (root / relative).resolve()
    if candidate != root and root not in candidate.parents:
        raise ToolNotPermitted(tool, f"path '{relative}' escapes the workspace")
    return candidate


def _require_str(args: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = args.get(key)
    if not isinstance(value, str) or (not allow_empty and not value):
        raise ToolValidationError(f"'{key}' must be a non-empty string")
    return value


def _walk(base: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


class Tool(ABC):
    kind: ClassVar[ToolKind]

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        """Return normalized arguments or raise `ToolValidationError`."""

    @abstractmethod
    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        ...


class ReadFileTool(Tool):
    kind = ToolKind.READ_FILE

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"path": _require_str(args, "path")}

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        path = resolve_in_root(root, args["path"], tool=self.name)
        if not path.is_file():
            return ToolResult(f"File not found: {args['path']}", is_error=True)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        return ToolResult(truncate(text, TOOL_OUTPUT_LIMIT))


class WriteFileTool(Tool):
    kind = ToolKind.WRITE_FILE

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"path": _require_str(args, "path"), "content": _require_str(args, "content", allow_empty=True)}

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        path = resolve_in_root(root, args["path"], tool=self.name)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(args["content"], encoding="utf-8")

        await asyncio.to_thread(_write)
        return ToolResult(f"Wrote {len(args['content'])} characters to {args['path']}")


class EditFileTool(Tool):
    kind = ToolKind.EDIT_FILE

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        return {
            "path": _require_str(args, "path"),
            "old": _require_str(args, "old"),
            "new": _require_str(args, "new", allow_empty=True),
        }

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        path = resolve_in_root(root, args["path"], tool=self.name)
        if not path.is_file():
            return ToolResult(f"File not found: {args['path']}", is_error=True)
        text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        count = text.count(args["old"])
        if count != 1:
            return ToolResult(f"Expected exactly one match for 'old' in {args['path']}, found {count}", is_error=True)
        await asyncio.to_thread(path.write_text, text.replace(args["old"], args["new"], 1), encoding="utf-8")
        return ToolResult(f"Edited {args['path']}")


class ListFilesTool(Tool):
    kind = ToolKind.LIST_FILES

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        path = args.get("path", ".")
        if not isinstance(path, str):
            raise ToolValidationError("'path' must be a string")
        return {"path": path or ".", "glob": args.get("glob") if isinstance(args.get("glob"), str) else None}

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        base = resolve_in_root(root, args["path"], tool=self.name)
        if not base.is_dir():
            return ToolResult(f"Not a directory: {args['path']}", is_error=True)
        resolved_root = root.resolve()

        def _list() -> list[str]:
            out: list[str] = []
            for file_path in _walk(base):
                rel = file_path.relative_to(resolved_root).as_posix()
                if args["glob"] and not fnmatch(rel, args["glob"]):
                    continue
                out.append(rel)
                if len(out) >= LIST_LIMIT:
                    break
            return out

        files = await asyncio.to_thread(_list)
        return ToolResult("\n".join(files) if files else "(no files)")


class SearchTool(Tool):
    kind = ToolKind.SEARCH

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        pattern = _require_str(args, "pattern")
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise ToolValidationError(f"Invalid pattern: {exc}") from exc
        path = args.get("path", ".")
        if not isinstance(path, str):
            raise ToolValidationError("'path' must be a string")
        return {"pattern": compiled, "path": path or ".", "glob": args.get("glob") if isinstance(args.get("glob"), str) else None}

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        base = resolve_in_root(root, args["path"], tool=self.name)
        resolved_root = root.resolve()
        pattern: re.Pattern[str] = args["pattern"]

        def _search() -> list[str]:
            matches: list[str] = []
            files = [base] if base.is_file() else _walk(base)
            for file_path in files:
                rel = file_path.relative_to(resolved_root).as_posix()
                if args["glob"] and not fnmatch(rel, args["glob"]):
                    continue
                try:
                    lines = file_path.read_text(encoding="utf-8").splitlines()
                except (UnicodeDecodeError, OSError):
                    continue
                for lineno, line in enumerate(lines, start=1):
                    if pattern.search(line):
                        matches.append(f"{rel}:{lineno}: {line.strip()}")
                        if len(matches) >= SEARCH_MAX_MATCHES:
                            return matches
            return matches

        found = await asyncio.to_thread(_search)
        return ToolResult("\n".join(found) if found else "(no matches)")


class RunCommandTool(Tool):
    kind = ToolKind.RUN_COMMAND

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    def validate(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"command": _require_str(args, "command")}

    async def execute(self, args: dict[str, Any], root: Path) -> ToolResult:
        exit_code, output = await run_shell(args["command"], cwd=root, timeout=self.timeout)
        if exit_code is None:
            return ToolResult(f"Command timed out after {self.timeout:g}s\n{output}", is_error=True)
        return ToolResult(f"exit code {exit_code}\n{truncate(output, TOOL_OUTPUT_LIMIT)}", is_error=exit_code != 0)


async def run_shell(command: str, *, cwd: Path, timeout: float) -> tuple[Optional[int], str]:
    """Run `command` in `cwd`; returns `(exit_code, combined_output)`, exit code None on timeout."""
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        stdout, _ = await proc.communicate()
        return None, (stdout or b"").decode("utf-8", errors="replace")
    return proc.returncode, (stdout or b"").decode("utf-8", errors="replace")


def build_tool_table(*, command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> dict[ToolKind, Tool]:
    tools: list[Tool] = [
        ReadFileTool(),
        WriteFileTool(),
        EditFileTool(),
        ListFilesTool(),
        SearchTool(),
        RunCommandTool(timeout=command_timeout),
    ]
    return {tool.kind: tool for tool in tools}


class ToolDispatcher:
    def __init__(self, allowed: frozenset[ToolKind], *, command_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        self.allowed = allowed
        self._table = build_tool_table(command_timeout=command_timeout)

    def resolve(self, name: str, allowed: Optional[frozenset[ToolKind]] = None) -> Tool:
        try:
            kind = ToolKind(name)
        except ValueError:
            raise ToolNotPermitted(name, "unknown tool") from None
        if kind not in (allowed if allowed is not None else self.allowed):
            raise ToolNotPermitted(name)
        return self._table[kind]

    async def invoke(
        self,
        request: ToolUseRequest,
        root: Path,
        *,
        allowed: Optional[frozenset[ToolKind]] = None,
    ) -> ToolResult:
        """Run one tool call inside `root`.

        Raises:
            ToolNotPermitted: The tool is unknown, not allowed, or targets a path outside `root`.
        """
        tool = self.resolve(request.tool, allowed)
        try:
            args = tool.validate(request.arguments)
        except ToolValidationError as exc:
            return ToolResult(f"Invalid arguments for {tool.name}: {exc}", is_error=True)
        logger.debug("Dispatching {} in {}", tool.name, root)
        return await tool.execute(args, root)
