from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from app.core.config import settings
from app.services.agent_loop.rate_limit import get_token_bucket
from app.services.agent_loop.state import is_exhausted
from app.services.teams.development.code_reviewer import DevelopmentCodeReviewer, ReviewOutcome
from app.services.teams.development.team_manager import DevelopmentTask, DevelopmentTeamManager
from app.services.teams.research.voyager import ResearchVoyager
from app.services.tools.file_system import create_temp_agent_directory, delete_temp_agent_directory
from app.services.tools.git import clone_repository


def answer_question(question: str, logger: logging.Logger) -> Tuple[Optional[str], bool]:
    """Answer a research question. Returns ``(answer, exhausted)``."""
    with ResearchVoyager(bucket=get_token_bucket(), logger=logger) as voyager:
        answer = voyager.invoke(question)
    if is_exhausted(answer):
        logger.warning(f"Research question exhausted its budget: {question}")
        return None, True
    return answer, False


def run_development_task(task: DevelopmentTask, data: Dict[str, Any], logger: logging.Logger) -> bool:
    """Plan ``task`` and hand the plan to a code writer."""
    logger.info(f"Running development task {task.value}")
    with DevelopmentTeamManager(bucket=get_token_bucket(), logger=logger) as manager:
        return manager.invoke(task, data)


def resolve_review_workspace(workspace: str) -> str:
    """Return ``workspace`` if it is an agent workspace under the temp root.

    Raises:
        ValueError: for any other path.
    """
    root = Path(settings.agents_temp_dir).resolve()
    path = Path(workspace).resolve()
    if root not in path.parents or not path.is_dir():
        raise ValueError(f"Unknown agent workspace: {workspace}")
    return str(path)


def review_changes(diff: str, workspace: Optional[str], logger: logging.Logger) -> ReviewOutcome:
    """Review ``diff`` against an existing workspace, or a fresh clone when none is given."""
    if workspace is not None:
        with DevelopmentCodeReviewer(resolve_review_workspace(workspace), bucket=get_token_bucket(), logger=logger) as reviewer:
            return reviewer.invoke(diff)

    temp_workspace = create_temp_agent_directory()
    try:
        clone_repository(settings.repository_url, temp_workspace)
        with DevelopmentCodeReviewer(temp_workspace, bucket=get_token_bucket(), logger=logger) as reviewer:
            return reviewer.invoke(diff)
    finally:
        delete_temp_agent_directory(temp_workspace)
