"""Development code reviewer: judges a git diff against the existing codebase."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.agent_loop.agent import AgentLoop
from app.services.agent_loop.rate_limit import TokenBucket, get_token_bucket
from app.services.agent_loop.state import is_exhausted
from app.services.agent_loop.utils import resolve_models
from app.services.tools.file_system import list_directory_tool, read_file_tool, search_files_tool

SYSTEM_PROMPT = (
    "You are a professional code reviewer. You must use the tools provided to you to read files in "
    "the project repository and analyse the supplied git diff. You do not need to do any testing, as "
    "that will be done by another agent. Only approve code if it matches the style and standards of "
    "existing code in the repository. Output a JSON response with the following structure: "
    "{ success: true/false, approved: true/false, suggestions: ['Suggestion 1', 'Suggestion 2'] }"
)


class ReviewResult(BaseModel):
    success: bool = Field(description="Whether the code review was successful.")
    approved: bool = Field(description="Whether the code changes meet all standards and are approved.")
    suggestions: Optional[List[str]] = Field(default=None, description="Suggestions for improvements.")


@dataclass
class ReviewOutcome:
    success: bool
    approved: bool
    suggestions: List[str] = field(default_factory=list)


def _to_outcome(result: Any) -> ReviewOutcome:
    if is_exhausted(result):
        return ReviewOutcome(success=False, approved=False)
    return ReviewOutcome(
        success=result.success,
        approved=result.approved,
        suggestions=list(result.suggestions or []),
    )


class DevelopmentCodeReviewer:
    """Reviews changes inside an existing workspace.

    The workspace belongs to the caller: :meth:`init` and :meth:`dispose`
    neither clone nor delete anything.
    """

    def __init__(
        self,
        workspace: str,
        llm: Optional[BaseChatModel] = None,
        format_llm: Optional[BaseChatModel] = None,
        bucket: Optional[TokenBucket] = None,
        max_iterations: int = settings.agent_max_iterations,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.workspace = workspace
        llm, format_llm = resolve_models(llm, format_llm)
        self.loop = AgentLoop(
            name="development-code-reviewer",
            llm=llm,
            format_llm=format_llm,
            system_prompt=SYSTEM_PROMPT,
            result_schema=ReviewResult,
            tools=[
                read_file_tool(workspace),
                list_directory_tool(workspace),
                search_files_tool(workspace),
            ],
            extract=_to_outcome,
            bucket=bucket or get_token_bucket(),
            max_iterations=max_iterations,
            logger=self.logger,
        )

    def init(self) -> "DevelopmentCodeReviewer":
        return self

    def dispose(self) -> None:
        pass

    def __enter__(self) -> "DevelopmentCodeReviewer":
        return self.init()

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def invoke(self, diff: str) -> ReviewOutcome:
        return self.loop.complete([
            HumanMessage(content=f"Here is the git diff of the code changes to review:\n\n{diff}")
        ])
