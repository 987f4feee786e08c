from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from deep_research.agents.orchestrator import RunOptions, SessionOrchestrator
from deep_research.agents.refinement import RefinementAgent
from deep_research.api.deps import get_orchestrator, get_refinement_agent
from deep_research.errors import InvalidStateTransition, ReportRegenerationNotAllowed, SessionNotFound
from deep_research.models.records import SessionRecord
from deep_research.models.schemas import (
    AcceptedResponse,
    AnswerRequest,
    ApproveRequest,
    CreateSessionRequest,
    CreateSessionResponse,
    ProviderStatusResponse,
    QuestionResponse,
    ReportStatusResponse,
    SessionResponse,
    SessionStatusResponse,
)
from deep_research.models.states import SessionState
from deep_research.services import logger as log_service

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _session_response(session: SessionRecord) -> SessionResponse:
    return SessionResponse(**{k: v for k, v in asdict(session).items() if k != "user_id"})


async def _load(orchestrator: SessionOrchestrator, session_id: str) -> SessionRecord:
    session = await orchestrator.store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("", response_model=CreateSessionResponse)
async def create_session(
    request: CreateSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    agent: RefinementAgent = Depends(get_refinement_agent),
):
    """Create a draft session and ask the refine provider for clarifying questions."""
    user_id = await orchestrator.store.ensure_user(request.email, request.name)
    session = await orchestrator.store.create_session(user_id, request.topic.strip())
    log_service.log_event("session_created", "Session created", session_id=session.id, topic=session.topic[:100])
    try:
        questions = await agent.run_refinement(session.id)
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Refinement failed: {e}")
    session = await _load(orchestrator, session.id)
    return CreateSessionResponse(
        session=_session_response(session),
        questions=[QuestionResponse(**asdict(q)) for q in questions],
    )


@router.get("/{session_id}/questions", response_model=list[QuestionResponse])
async def list_questions(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    await _load(orchestrator, session_id)
    return [QuestionResponse(**asdict(q)) for q in await orchestrator.store.list_questions(session_id)]


@router.post("/questions/{question_id}/answer", response_model=QuestionResponse)
async def answer_question(
    question_id: str, request: AnswerRequest, agent: RefinementAgent = Depends(get_refinement_agent)
):
    try:
        question = await agent.answer_question(question_id, request.answer)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Question not found")
    return QuestionResponse(**asdict(question))


@router.post("/{session_id}/approve", response_model=AcceptedResponse, status_code=202)
async def approve(
    session_id: str,
    request: ApproveRequest,
    background: BackgroundTasks,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
    agent: RefinementAgent = Depends(get_refinement_agent),
):
    """Approve the refined prompt; research runs after the response is sent."""
    session = await _load(orchestrator, session_id)
    if session.state != SessionState.REFINING.value:
        raise HTTPException(status_code=409, detail=f"Session is {session.state}, expected refining")
    options = RunOptions(skip_openai=request.skip_openai, skip_gemini=request.skip_gemini)
    background.add_task(agent.handle_refinement_approval, session_id, request.refined_prompt, options)
    return AcceptedResponse(session_id=session_id, accepted=True)


@router.post("/{session_id}/sync", response_model=AcceptedResponse, status_code=202)
async def sync(
    session_id: str, background: BackgroundTasks, orchestrator: SessionOrchestrator = Depends(get_orchestrator)
):
    await _load(orchestrator, session_id)
    background.add_task(orchestrator.sync_session, session_id)
    return AcceptedResponse(session_id=session_id, accepted=True)


@router.post("/{session_id}/retry", response_model=AcceptedResponse, status_code=202)
async def retry(
    session_id: str, background: BackgroundTasks, orchestrator: SessionOrchestrator = Depends(get_orchestrator)
):
    await _load(orchestrator, session_id)
    background.add_task(orchestrator.retry_session, session_id)
    return AcceptedResponse(session_id=session_id, accepted=True)


@router.post("/{session_id}/report/regenerate", response_model=ReportStatusResponse)
async def regenerate_report(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    await _load(orchestrator, session_id)
    try:
        report = await orchestrator.finalizer.regenerate_report_for_session(session_id)
    except (ReportRegenerationNotAllowed, InvalidStateTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Report regeneration failed: {e}")
    return ReportStatusResponse(**{k: getattr(report, k) for k in ReportStatusResponse.model_fields})


@router.get("/{session_id}", response_model=SessionStatusResponse)
async def session_status(session_id: str, orchestrator: SessionOrchestrator = Depends(get_orchestrator)):
    store = orchestrator.store
    session = await _load(orchestrator, session_id)

    providers = []
    for result in await store.list_provider_results(session_id):
        run = await store.get_research_run(result.model_run_id) if result.model_run_id else None
        providers.append(
            ProviderStatusResponse(
                provider=result.provider,
                status=result.status,
                model_run_id=result.model_run_id,
                error_message=result.error_message,
                external_status=result.external_status,
                progress=run.progress if run else {},
            )
        )

    report = await store.get_latest_report(session_id)
    return SessionStatusResponse(
        session=_session_response(session),
        providers=providers,
        report=ReportStatusResponse(**{k: getattr(report, k) for k in ReportStatusResponse.model_fields})
        if report
        else None,
    )
