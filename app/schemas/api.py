from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from app.services.teams.development.team_manager import DevelopmentTask, Severity


class ResearchQuestionRequest(BaseModel):
    question: str = Field(
        example="Who won the 2022 FIFA World Cup?",
        description="The question the research voyager should answer by browsing",
    )


class ResearchQuestionResponse(BaseModel):
    answer: Optional[str] = None
    exhausted: bool = False


class DevelopmentTaskRequest(BaseModel):
    task: DevelopmentTask = Field(example="AddFeature", description="The development task to run")
    description: str = Field(
        example="Add a --verbose flag to the CLI",
        description="What the feature should do, or what the bug is",
    )
    location: Optional[str] = Field(default=None, description="Where the bug occurs (FixBug only)")
    severity: Optional[Severity] = Field(default=None, description="Bug severity (FixBug only)")
    steps_to_reproduce: Optional[List[str]] = None
    expected_behavior: Optional[str] = None
    actual_behavior: Optional[str] = None
    additional_info: Optional[str] = None

    @model_validator(mode="after")
    def check_bug_report(self) -> "DevelopmentTaskRequest":
        if self.task is DevelopmentTask.FIX_BUG and (not self.location or self.severity is None):
            raise ValueError("FixBug requires 'location' and 'severity'")
        return self

    def task_data(self) -> dict:
        if self.task is DevelopmentTask.ADD_FEATURE:
            return {"description": self.description}
        return self.model_dump(exclude={"task"}, exclude_none=True, mode="json")


class DevelopmentTaskResponse(BaseModel):
    success: bool


class CodeReviewRequest(BaseModel):
    diff: str = Field(description="The git diff to review")
    workspace: Optional[str] = Field(
        default=None,
        description="Existing agent workspace to review against; a fresh clone is used when omitted",
    )


class CodeReviewResponse(BaseModel):
    success: bool
    approved: bool
    suggestions: List[str] = []
