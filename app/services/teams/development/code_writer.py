"""Development code writer: implements a plan in a cloned repository and commits it."""

from __future__ import annotations

import logging
from typing import Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.agent_loop.agent import AgentLoop
from app.services.agent_loop.errors import AgentLoopError
from app.services.agent_loop.rate_limit import TokenBucket, get_token_bucket
from app.services.agent_loop.state import is_exhausted
from app.services.agent_loop.utils import resolve_models
from app.services.tools.file_system import (
    create_directory_tool,
    create_temp_agent_directory,
    delete_file_tool,
    delete_temp_agent_directory,
    list_directory_tool,
    read_file_tool,
    remove_directory_tool,
    write_file_tool,
)
from app.services.tools.git import clone_repository, commit_changes_tool
from app.services.tools.search import searx_search_tool

SYSTEM_PROMPT = (
    "You are a professional code writer. You are given a plan to implement and you must use the "
    "tools provided to you to read, write, and modify files in the project repository. You do not "
    "need to do any testing, as that will be done by another agent. You can also search for "
    "information online using the Searx search tool. Make sure to commit your changes to the "
    "repository after implementing the plan. Commit messages must follow the Conventional Commits "
    "specification. Output a JSON response with the following structure: { success: true/false } "
    "only once you have written the code and committed it."
)


class CodeWriterResult(BaseModel):
    success: bool = Field(description="Indicates whether the code writing & commit were successful.")


class DevelopmentCodeWriter:
    """Agent that edits files in its own workspace until the plan is done.

    Use :meth:`init` to clone the repository and :meth:`dispose` to remove
    the workspace, or use the instance as a context manager.
    """

    def __init__(
        self,
        llm: Optional[BaseChatModel] = None,
        format_llm: Optional[BaseChatModel] = None,
        bucket: Optional[TokenBucket] = None,
        workspace: Optional[str] = None,
        repository_url: Optional[str] = None,
        max_iterations: int = settings.agent_max_iterations,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.workspace = workspace or create_temp_agent_directory()
        self.repository_url = repository_url or settings.repository_url
        llm, format_llm = resolve_models(llm, format_llm)

        tools = [
            searx_search_tool(),
            read_file_tool(self.workspace),
            write_file_tool(self.workspace),
            delete_file_tool(self.workspace),
            list_directory_tool(self.workspace),
            create_directory_tool(self.workspace),
            remove_directory_tool(self.workspace),
            commit_changes_tool(self.workspace),
        ]
        self.loop = AgentLoop(
            name="development-code-writer",
            llm=llm,
            format_llm=format_llm,
            system_prompt=SYSTEM_PROMPT,
            result_schema=CodeWriterResult,
            tools=tools,
            bucket=bucket or get_token_bucket(),
            max_iterations=max_iterations,
            logger=self.logger,
        )

    @property
    def thread_id(self) -> str:
        return self.loop.thread_id

    def init(self) -> "DevelopmentCodeWriter":
        clone_repository(self.repository_url, self.workspace)
        return self

    def dispose(self) -> None:
        delete_temp_agent_directory(self.workspace)

    def __enter__(self) -> "DevelopmentCodeWriter":
        return self.init()

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def invoke(self, plan: str) -> bool:
        """Implement ``plan`` and commit the result.

        Returns:
            True on success, False when the iteration budget ran out.

        Raises:
            AgentLoopError: if the agent reports that it could not implement the plan.
        """
        result = self.loop.complete([
            HumanMessage(
                content=(
                    f"The following plan has been compiled for you to complete: {plan}\n\n"
                    "Read and edit files & directories to implement this plan."
                )
            )
        ])
        if is_exhausted(result):
            self.logger.warning(f"[{self.thread_id}] {result.message}")
            return False
        if not result.success:
            raise AgentLoopError("Failed to implement the plan")
        return True
