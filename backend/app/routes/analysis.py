"""Health analysis API routes."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.auth import verify_api_key
from app.exceptions import HealthRecordError
from app.routes.deps import get_orchestrator, http_error
from app.services.analysis import AnalysisOrchestrator
from app.services.wearable_filter import WearableMode

router = APIRouter(prefix="/users/{user_id}", tags=["analysis"])


class AnalysisRequest(BaseModel):
    question: str | None = None
    profile_info: str = ""
    topics: list[str] | None = None
    wearable_mode: WearableMode | None = None


class AnalysisSectionResponse(BaseModel):
    tag: str
    content: str
    failed: bool = False


class AnalysisResponse(BaseModel):
    analysis: str
    sections: list[AnalysisSectionResponse]
    resource_count: int
    used_index: bool


class QuestionRequest(BaseModel):
    question: str = Field(..., min_length=1)
    profile_info: str = ""
    wearable_mode: WearableMode | None = None


class QuestionResponse(BaseModel):
    answer: str
    relevant_records: str
    additional_context: str
    resource_ids: list[str]


@router.post("/analysis", response_model=AnalysisResponse)
async def analyze(
    user_id: str,
    request: AnalysisRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    _api_key: str = Depends(verify_api_key),
) -> AnalysisResponse:
    """Run the topic analysis over the user's health record.

    Failed topics appear as inline error blocks; the request still succeeds.
    """
    try:
        report = await orchestrator.analyze_user(
            user_id,
            question=request.question,
            profile_info=request.profile_info,
            topics=request.topics,
            mode=request.wearable_mode,
        )
    except HealthRecordError as e:
        raise http_error(e)
    return AnalysisResponse(
        analysis=report.render(),
        sections=[AnalysisSectionResponse(tag=s.tag, content=s.content, failed=s.failed) for s in report.sections],
        resource_count=report.resource_count,
        used_index=report.used_index,
    )


@router.post("/question", response_model=QuestionResponse)
async def ask_question(
    user_id: str,
    request: QuestionRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
    _api_key: str = Depends(verify_api_key),
) -> QuestionResponse:
    """Answer a question from the user's most relevant records."""
    try:
        answer = await orchestrator.answer_question(
            user_id, request.question, request.profile_info, request.wearable_mode
        )
    except HealthRecordError as e:
        raise http_error(e)
    return QuestionResponse(
        answer=answer.answer,
        relevant_records=answer.relevant_records,
        additional_context=answer.additional_context,
        resource_ids=answer.resource_ids,
    )
