"""Development team manager: explores the codebase, plans a task and hands it to a code writer."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from pydantic import BaseModel, Field

from app.core.config import settings
from app.services.agent_loop.agent import AgentLoop
from app.services.agent_loop.rate_limit import TokenBucket, get_token_bucket
from app.services.agent_loop.state import ExhaustedResult, is_exhausted
from app.services.agent_loop.utils import resolve_models
from app.services.teams.development.code_writer import DevelopmentCodeWriter
from app.services.tools.file_system import (
    create_temp_agent_directory,
    delete_temp_agent_directory,
    list_directory_tool,
    path_exists_tool,
    read_file_tool,
    search_files_tool,
)
from app.services.tools.git import clone_repository
from app.services.tools.search import searx_search_tool

SYSTEM_PROMPT = (
    "You are the team manager of a development team. You are given a task for which you must "
    "create a detailed plan to achieve that task. You must use the tools provided to you to gather "
    "information. The plan must align with the style and language already used in the codebase. "
    "Use the read file, list directory and search files tools to explore the codebase. Output a "
    "detailed plan in the format: { plan: 'Your detailed plan here' } only once you have gathered "
    "enough information and done enough enumeration."
)


class DevelopmentTask(str, Enum):
    ADD_FEATURE = "AddFeature"
    FIX_BUG = "FixBug"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PlanResult(BaseModel):
    plan: str = Field(
        description="The detailed plan for the task, including references to files to modify, create, or delete."
    )


def _plan_text(result: Any) -> Union[str, ExhaustedResult]:
    return result if is_exhausted(result) else result.plan


def build_fix_bug_prompt(
    location: str,
    description: str,
    severity: str,
    steps_to_reproduce: Optional[List[str]] = None,
    expected_behavior: Optional[str] = None,
    actual_behavior: Optional[str] = None,
    additional_info: Optional[str] = None,
) -> str:
    """Describe a bug report as a planning request."""
    lines = [
        f"Fix a {Severity(severity).value} severity bug located at: {location}",
        f"Description: {description}",
    ]
    if steps_to_reproduce:
        lines.append("Steps to reproduce:")
        lines.extend(f"{i}. {step}" for i, step in enumerate(steps_to_reproduce, 1))
    if expected_behavior:
        lines.append(f"Expected behavior: {expected_behavior}")
    if actual_behavior:
        lines.append(f"Actual behavior: {actual_behavior}")
    if additional_info:
        lines.append(f"Additional information: {additional_info}")
    lines.append(
        "\nCreate a detailed plan to fix this bug and reference files to modify, create or delete etc. "
        "You must use tools and read files."
    )
    return "\n".join(lines)


class DevelopmentTeamManager:
    """Plans development tasks and delegates the implementation.

    Args:
        llm: Chat model for planning; created from settings when omitted.
        format_llm: Model for the formatting step.
        bucket: Shared token bucket, defaults to the process-wide one.
        workspace: Directory the repository is cloned into.
        repository_url: Repository to work on.
        writer_factory: Builds the code writer for a plan. Defaults to a
            :class:`DevelopmentCodeWriter` sharing this manager's models and bucket.
        max_iterations: Planning iteration budget.
        logger: Logger instance.
    """

    def __init__(
        self,
        llm: Optional[BaseChatModel] = None,
        format_llm: Optional[BaseChatModel] = None,
        bucket: Optional[TokenBucket] = None,
        workspace: Optional[str] = None,
        repository_url: Optional[str] = None,
        writer_factory: Optional[Callable[[], DevelopmentCodeWriter]] = None,
        max_iterations: int = settings.agent_max_iterations,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.workspace = workspace or create_temp_agent_directory()
        self.repository_url = repository_url or settings.repository_url
        self.bucket = bucket or get_token_bucket()
        self._injected_llm = llm
        self._injected_format_llm = format_llm
        self.writer_factory = writer_factory or self._default_writer
        llm, format_llm = resolve_models(llm, format_llm)

        tools = [
            searx_search_tool(),
            read_file_tool(self.workspace),
            list_directory_tool(self.workspace),
            path_exists_tool(self.workspace),
            search_files_tool(self.workspace),
        ]
        self.loop = AgentLoop(
            name="development-team-manager",
            llm=llm,
            format_llm=format_llm,
            system_prompt=SYSTEM_PROMPT,
            result_schema=PlanResult,
            tools=tools,
            extract=_plan_text,
            bucket=self.bucket,
            max_iterations=max_iterations,
            logger=self.logger,
        )

    @property
    def thread_id(self) -> str:
        return self.loop.thread_id

    def _default_writer(self) -> DevelopmentCodeWriter:
        return DevelopmentCodeWriter(
            llm=self._injected_llm,
            format_llm=self._injected_format_llm,
            bucket=self.bucket,
            repository_url=self.repository_url,
            logger=self.logger,
        )

    def init(self) -> "DevelopmentTeamManager":
        clone_repository(self.repository_url, self.workspace)
        return self

    def dispose(self) -> None:
        delete_temp_agent_directory(self.workspace)

    def __enter__(self) -> "DevelopmentTeamManager":
        return self.init()

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def invoke(self, task: Union[DevelopmentTask, str], data: Dict[str, Any]) -> bool:
        """Run ``task`` with its ``data``.

        Raises:
            ValueError: for an unknown task.
        """
        try:
            task = DevelopmentTask(task)
        except ValueError as exc:
            raise ValueError(f"Unknown task: {task}") from exc

        if task is DevelopmentTask.ADD_FEATURE:
            return self.add_feature(data["description"])
        return self.fix_bug(**data)

    def create_plan(self, prompt: str) -> Union[str, ExhaustedResult]:
        """Explore the repository and return a plan for ``prompt``."""
        return self.loop.complete([HumanMessage(content=prompt)])

    def add_feature(self, description: str) -> bool:
        plan = self.create_plan(
            f"Add a feature with the following description: {description}\n\n"
            "Create a detailed plan to achieve this task and reference files to modify, "
            "create or delete etc. You must use tools and read files."
        )
        return self._hand_off(plan)

    def fix_bug(self, **bug_report: Any) -> bool:
        plan = self.create_plan(build_fix_bug_prompt(**bug_report))
        return self._hand_off(plan)

    def _hand_off(self, plan: Union[str, ExhaustedResult]) -> bool:
        """Give ``plan`` to a fresh code writer.

        Returns False when no plan was produced. A failing code writer is
        logged but does not fail the task.
        """
        if is_exhausted(plan):
            self.logger.warning(f"[{self.thread_id}] No plan produced: {plan.message}")
            return False

        self.logger.info(f"[{self.thread_id}] Generated plan: {plan}")

        try:
            with self.writer_factory() as writer:
                written = writer.invoke(plan)
        except Exception as e:
            self.logger.error(f"[{self.thread_id}] Error invoking code writer agent: {e}", exc_info=True)
            written = False

        self.logger.info(f"[{self.thread_id}] Code write success: {written}")
        return True
