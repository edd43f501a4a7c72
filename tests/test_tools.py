from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from feature_runner.agent import ToolDispatcher, ToolUseRequest
from feature_runner.domain.models import READ_ONLY_TOOLS, ToolKind
from feature_runner.errors import ToolNotPermitted


def _invoke(dispatcher: ToolDispatcher, root: Path, tool: str, **arguments: object):
    return asyncio.run(dispatcher.invoke(ToolUseRequest(tool=tool, arguments=dict(arguments)), root))


def test_write_read_and_edit(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(frozenset(ToolKind))
    written = _invoke(dispatcher, tmp_path, "write_file", path="src/app.py", content="x = 1\n")
    assert not written.is_error
    assert (tmp_path / "src" / "app.py").read_text() == "x = 1\n"

    assert _invoke(dispatcher, tmp_path, "read_file", path="src/app.py").output == "x = 1\n"

    edited = _invoke(dispatcher, tmp_path, "edit_file", path="src/app.py", old="x = 1", new="x = 2")
    assert not edited.is_error
    assert (tmp_path / "src" / "app.py").read_text() == "x = 2\n"


def test_edit_requires_unique_match(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("same\nsame\n")
    result = _invoke(ToolDispatcher(frozenset(ToolKind)), tmp_path, "edit_file", path="a.txt", old="same", new="x")
    assert result.is_error
    assert "found 2" in result.output
    assert (tmp_path / "a.txt").read_text() == "same\nsame\n"


def test_list_and_search_skip_git_dir(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "config").write_text("needle\n")
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("first\nneedle here\n")
    dispatcher = ToolDispatcher(READ_ONLY_TOOLS)

    listing = _invoke(dispatcher, tmp_path, "list_files")
    assert listing.output.splitlines() == ["pkg/mod.py"]

    found = _invoke(dispatcher, tmp_path, "search", pattern="needle")
    assert found.output == "pkg/mod.py:2: needle here"


def test_path_escape_is_not_permitted(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(frozenset(ToolKind))
    with pytest.raises(ToolNotPermitted):
        _invoke(dispatcher, tmp_path, "read_file", path="../outside.txt")
    with pytest.raises(ToolNotPermitted):
        _invoke(dispatcher, tmp_path, "write_file", path="/etc/passwd", content="")


def test_tool_outside_allow_list_is_not_permitted(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(READ_ONLY_TOOLS)
    with pytest.raises(ToolNotPermitted) as excinfo:
        _invoke(dispatcher, tmp_path, "run_command", command="echo hi")
    assert excinfo.value.tool == "run_command"
    with pytest.raises(ToolNotPermitted):
        _invoke(dispatcher, tmp_path, "format_disk")


def test_bad_arguments_come_back_as_error_result(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(frozenset(ToolKind))
    result = _invoke(dispatcher, tmp_path, "read_file")
    assert result.is_error
    assert "'path'" in result.output
    assert _invoke(dispatcher, tmp_path, "search", pattern="(").is_error


def test_run_command_runs_in_workspace(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(frozenset(ToolKind))
    ok = _invoke(dispatcher, tmp_path, "run_command", command="pwd")
    assert ok.output.startswith("exit code 0")
    assert str(tmp_path.resolve()) in ok.output

    failed = _invoke(dispatcher, tmp_path, "run_command", command="exit 3")
    assert failed.is_error
    assert failed.output.startswith("exit code 3")


def test_run_command_timeout_kills_process(tmp_path: Path) -> None:
    dispatcher = ToolDispatcher(frozenset(ToolKind), command_timeout=0.2)
    result = _invoke(dispatcher, tmp_path, "run_command", command="sleep 5")
    assert result.is_error
    assert "timed out" in result.output
