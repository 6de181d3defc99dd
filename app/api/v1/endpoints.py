from fastapi import APIRouter, HTTPException
from app.schemas.api import (
    CodeReviewRequest,
    CodeReviewResponse,
    DevelopmentTaskRequest,
    DevelopmentTaskResponse,
    ResearchQuestionRequest,
    ResearchQuestionResponse,
)
from app.services import svc
from app.services.agent_loop.errors import MissingResultError
import logging

logger = logging.getLogger("services")
router = APIRouter()


# Sync handlers: FastAPI runs them on its thread pool, one agent per request.
@router.post("/research/questions", response_model=ResearchQuestionResponse)
def research_question(req: ResearchQuestionRequest):
    try:
        answer, exhausted = svc.answer_question(req.question, logger)
    except MissingResultError as e:
        logger.error(f"Research voyager finished without a result: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return ResearchQuestionResponse(answer=answer, exhausted=exhausted)


@router.post("/development/tasks", response_model=DevelopmentTaskResponse)
def development_task(req: DevelopmentTaskRequest):
    try:
        success = svc.run_development_task(req.task, req.task_data(), logger)
    except MissingResultError as e:
        logger.error(f"Team manager finished without a result: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return DevelopmentTaskResponse(success=success)


@router.post("/development/reviews", response_model=CodeReviewResponse)
def development_review(req: CodeReviewRequest):
    try:
        outcome = svc.review_changes(req.diff, req.workspace, logger)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MissingResultError as e:
        logger.error(f"Code reviewer finished without a result: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return CodeReviewResponse(
        success=outcome.success,
        approved=outcome.approved,
        suggestions=outcome.suggestions,
    )
