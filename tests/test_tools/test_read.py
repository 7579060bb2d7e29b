from pathlib import Path

import pytest

from streamloop.tools.ask_user import AskUserTool
from streamloop.tools.read import ReadTool


@pytest.mark.asyncio
async def test_read_tool_reads_file_in_workspace(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("alpha\nbeta\ngamma\n", encoding="utf-8")

    result = await ReadTool().execute(path="notes.txt", _runtime_base_path=tmp_path)

    assert result.success is True
    assert result.content.endswith("alpha\nbeta\ngamma")


@pytest.mark.asyncio
async def test_read_tool_applies_offset_and_limit(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("1\n2\n3\n4\n5\n", encoding="utf-8")

    result = await ReadTool().execute(path="notes.txt", offset=2, limit=2, _runtime_base_path=tmp_path)

    header, body = result.content.split("\n", 1)
    assert body == "2\n3"
    assert "[lines 2-3]" in header


@pytest.mark.asyncio
async def test_read_tool_reports_missing_file(tmp_path: Path):
    result = await ReadTool().execute(path="nope.txt", _runtime_base_path=tmp_path)

    assert result.success is False
    assert "File not found" in result.error


@pytest.mark.asyncio
async def test_read_tool_rejects_directories(tmp_path: Path):
    (tmp_path / "folder").mkdir()

    result = await ReadTool().execute(path="folder", _runtime_base_path=tmp_path)

    assert result.success is False
    assert "Not a file" in result.error


@pytest.mark.asyncio
async def test_ask_user_tool_echoes_question():
    tool = AskUserTool()

    result = await tool.execute(question=" Which colour? ")

    assert result.success is True
    assert result.content == "Question sent to user: Which colour?"
    assert tool.operation_kind == "await_input"
