from pathlib import Path

import pytest

from vibey.tools.filesystem import ListDirectoryTool, ReadFileTool, WriteFileTool


@pytest.mark.asyncio
async def test_write_then_read_relative_path(tmp_path: Path):
    write = WriteFileTool(tmp_path)
    read = ReadFileTool(tmp_path)

    written = await write.execute(path="src/app.py", content="print('hi')\n")
    result = await read.execute(path="src/app.py")

    assert written.success
    assert (tmp_path / "src" / "app.py").read_text(encoding="utf-8") == "print('hi')\n"
    assert result.success
    assert result.content == "print('hi')\n"


@pytest.mark.asyncio
async def test_read_applies_offset_and_limit(tmp_path: Path):
    (tmp_path / "lines.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")

    result = await ReadFileTool(tmp_path).execute(path="lines.txt", offset=2, limit=2)

    assert result.content == "two\nthree"


@pytest.mark.asyncio
async def test_paths_outside_workspace_are_denied(tmp_path: Path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    (tmp_path / "secret.txt").write_text("x", encoding="utf-8")

    read = await ReadFileTool(workspace).execute(path="../secret.txt")
    write = await WriteFileTool(workspace).execute(path=str(tmp_path / "evil.txt"), content="x")

    assert not read.success
    assert "outside the workspace" in (read.error or "")
    assert not write.success
    assert not (tmp_path / "evil.txt").exists()


@pytest.mark.asyncio
async def test_read_missing_file_fails(tmp_path: Path):
    result = await ReadFileTool(tmp_path).execute(path="missing.txt")

    assert not result.success
    assert result.error == "File not found: missing.txt"


@pytest.mark.asyncio
async def test_list_directory_skips_excluded_names(tmp_path: Path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / "README.md").write_text("", encoding="utf-8")

    flat = await ListDirectoryTool(tmp_path).execute()
    deep = await ListDirectoryTool(tmp_path).execute(recursive=True)

    assert flat.content.splitlines() == ["README.md", "pkg/"]
    assert deep.content.splitlines() == ["README.md", "pkg/", "pkg/mod.py"]
