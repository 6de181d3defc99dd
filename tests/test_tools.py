from __future__ import annotations

import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from app.services.tools import git, search
from app.services.tools.file_system import (
    clean_written_content,
    create_temp_agent_directory,
    delete_temp_agent_directory,
    file_system_tools,
)


@pytest.fixture
def tools(tmp_path):
    return {tool.name: tool for tool in file_system_tools(str(tmp_path))}


# ---------------------------- File system --------------------------
def test_workspace_is_created_and_deleted(tmp_path):
    workspace = create_temp_agent_directory(str(tmp_path / "temp"))

    assert Path(workspace).is_dir()
    assert Path(workspace).name.startswith("agent_")

    delete_temp_agent_directory(workspace)
    assert not Path(workspace).exists()
    delete_temp_agent_directory(workspace)


def test_write_then_read_file(tools, tmp_path):
    assert tools["write_file"].invoke({"file_path": "notes.md", "content": "hello"}) == "Successfully wrote to notes.md"
    assert tools["read_file"].invoke({"file_path": "notes.md"}) == "hello"
    assert (tmp_path / "notes.md").read_text() == "hello"


def test_written_content_is_unescaped():
    raw = '"line one\\nit\\\'s \\"quoted\\" \\`tick\\` \\$HOME \\\\ end"'

    assert clean_written_content(raw) == "line one\nit's \"quoted\" `tick` $HOME \\ end"


def test_paths_outside_the_workspace_are_refused(tools):
    result = tools["read_file"].invoke({"file_path": "../../etc/passwd"})

    assert result.startswith("Error reading file:")
    assert "outside the agent workspace" in result


def test_missing_file_is_reported_as_error(tools):
    assert tools["delete_file"].invoke({"file_path": "nope.txt"}).startswith("Error deleting file:")


def test_directory_tools(tools, tmp_path):
    assert tools["create_directory"].invoke({"dir_path": "src/pkg"}) == "Successfully created directory src/pkg"
    (tmp_path / "src" / "main.py").write_text("print('hi')")

    assert json.loads(tools["list_directory"].invoke({"dir_path": "src"})) == ["main.py", "pkg/"]
    assert json.loads(tools["path_exists"].invoke({"path_to_check": "src/pkg"})) == {"exists": True}

    assert tools["remove_directory"].invoke({"dir_path": "src"}) == "Successfully removed directory src"
    assert json.loads(tools["path_exists"].invoke({"path_to_check": "src"})) == {"exists": False}


def test_workspace_root_cannot_be_removed(tools, tmp_path):
    assert tools["remove_directory"].invoke({"dir_path": "."}).startswith("Error removing directory:")
    assert tmp_path.exists()


def test_search_files_ranks_relevant_chunks(tools, tmp_path):
    (tmp_path / "billing.py").write_text("def compute_invoice_total(invoice):\n    return sum(invoice.lines)\n")
    (tmp_path / "auth.py").write_text("def login(user, password):\n    return check(user, password)\n")
    (tmp_path / "readme.md").write_text("Project readme describing the modules.\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "invoice.js").write_text("invoice invoice invoice")
    (tmp_path / "image.png").write_bytes(b"\x89PNG")

    payload = json.loads(tools["search_files"].invoke({"dir_path": ".", "query": "invoice total", "top_k": 1}))

    assert payload["success"] is True
    assert [r["filePath"] for r in payload["results"]] == ["billing.py"]
    assert payload["message"] == "Found 1 relevant chunks across 3 files"


def test_search_files_with_no_files(tools):
    payload = json.loads(tools["search_files"].invoke({"dir_path": ".", "query": "anything"}))

    assert payload["success"] is True
    assert payload["results"] == []


# ---------------------------- Git ----------------------------------
def test_run_git_raises_on_failure(monkeypatch):
    def fake_run(command, **kwargs):
        return subprocess.CompletedProcess(command, returncode=128, stdout="", stderr="fatal: not a repo")

    monkeypatch.setattr(git.subprocess, "run", fake_run)

    with pytest.raises(git.GitCommandError, match="not a repo"):
        git.run_git(["status"])


def test_clone_repository_invokes_git_clone(monkeypatch):
    calls = []
    monkeypatch.setattr(git, "run_git", lambda args, cwd=None: calls.append(args) or "")

    git.clone_repository("https://example.com/repo.git", "/tmp/agent_x")

    assert calls == [["clone", "https://example.com/repo.git", "/tmp/agent_x"]]


def test_commit_changes_stages_commits_and_pushes(monkeypatch, tmp_path):
    calls = []

    def fake_run_git(args, cwd=None):
        calls.append((tuple(args), cwd))
        return " M file.py\n" if args[0] == "status" else ""

    monkeypatch.setattr(git, "run_git", fake_run_git)
    tool = git.commit_changes_tool(str(tmp_path), push=True)

    result = tool.invoke({"message": "feat: add flag"})

    assert result == "Committed and pushed changes: feat: add flag"
    assert [c[0] for c in calls] == [
        ("add", "-A"),
        ("status", "--porcelain"),
        ("commit", "-m", "feat: add flag"),
        ("push",),
    ]
    assert all(c[1] == str(tmp_path) for c in calls)


def test_commit_changes_reports_git_errors(monkeypatch, tmp_path):
    def fake_run_git(args, cwd=None):
        raise git.GitCommandError("git add failed")

    monkeypatch.setattr(git, "run_git", fake_run_git)

    result = git.commit_changes_tool(str(tmp_path), push=False).invoke({"message": "fix: x"})

    assert result == "Error committing changes: git add failed"


# ---------------------------- Search -------------------------------
class _FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


def test_searx_search_shapes_results():
    captured = {}

    def fake_get(url, params=None, timeout=None):
        captured.update(url=url, params=params)
        return _FakeResponse({
            "results": [
                {"title": f"T{i}", "url": f"https://r/{i}", "content": f"snippet {i}"} for i in range(8)
            ]
        })

    results = search.searx_search(
        "python agents",
        api_url="http://searx.local/",
        num_results=5,
        session=SimpleNamespace(get=fake_get),
    )

    assert captured["url"] == "http://searx.local/search"
    assert captured["params"] == {"q": "python agents", "format": "json", "language": "en", "safesearch": 0}
    assert len(results) == 5
    assert results[0] == {"title": "T0", "link": "https://r/0", "snippet": "snippet 0"}


def test_searx_tool_reports_empty_results(monkeypatch):
    monkeypatch.setattr(search, "searx_search", lambda query, api_url=None: [])

    assert search.searx_search_tool().invoke({"query": "nothing"}) == "No good results found."
