"""Version control helpers driving the ``git`` command line."""

from __future__ import annotations

import logging
import subprocess
from typing import List, Optional, Sequence

from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field

from app.core.config import settings

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 300


class GitCommandError(RuntimeError):
    """A git invocation failed or could not be started."""


def run_git(args: Sequence[str], cwd: Optional[str] = None) -> str:
    """Run ``git <args>`` and return its stdout.

    Raises:
        GitCommandError: when git is missing or exits with a non-zero status.
    """
    command: List[str] = ["git", *args]
    try:
        completed = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except FileNotFoundError as error:
        raise GitCommandError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        raise GitCommandError(f"git {args[0]} timed out after {GIT_TIMEOUT_SECONDS}s") from error

    if completed.returncode != 0:
        raise GitCommandError(
            f"git {args[0]} failed with exit code {completed.returncode}: {completed.stderr.strip()}"
        )
    return completed.stdout


def clone_repository(repository_url: str, local_path: str) -> None:
    """Clone ``repository_url`` into the (empty) directory ``local_path``."""
    logger.info(f"Cloning {repository_url} into {local_path}")
    run_git(["clone", repository_url, local_path])


class CommitChangesInput(BaseModel):
    message: str = Field(description="The commit message. Must follow the Conventional Commits specification.")


def commit_changes_tool(workspace: str, push: Optional[bool] = None) -> BaseTool:
    """Tool staging every change in ``workspace`` and committing it.

    Args:
        workspace: Repository working tree.
        push: Push after committing, defaults to ``settings.git_push``.
    """
    should_push = settings.git_push if push is None else push

    def commit_changes(message: str) -> str:
        try:
            run_git(["add", "-A"], cwd=workspace)
            if not run_git(["status", "--porcelain"], cwd=workspace).strip():
                return "No changes to commit"
            run_git(["commit", "-m", message], cwd=workspace)
            if should_push:
                run_git(["push"], cwd=workspace)
                return f"Committed and pushed changes: {message}"
        except GitCommandError as e:
            return f"Error committing changes: {e}"
        return f"Committed changes: {message}"

    return StructuredTool.from_function(
        func=commit_changes,
        name="commit_changes",
        description="Stages all changes in the repository and commits them with the given message.",
        args_schema=CommitChangesInput,
    )
