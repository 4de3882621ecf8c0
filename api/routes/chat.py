"""
Chat Routes: Advisory Chat, Approval and Session Lifecycle

- POST /chat                      one gated request to the vendor
- POST /chat/{chat_id}/approve    approve (optionally edit) a generated turn
- POST /sessions/{id}/open        start the cache keep-alive for a session
- POST /sessions/{id}/close       stop it
"""

from fastapi import APIRouter, Depends, status
from loguru import logger

from api.dependencies import get_actor, get_chat_service
from api.schemas import (
    ApproveRequest,
    ApproveResponse,
    ChatRequestBody,
    ChatResponse,
    CostResponse,
    SessionRequest,
    SessionResponse,
    UsageResponse,
)
from core.models import Actor
from services.chat_service import ChatRequest, ChatService

router = APIRouter(tags=["Chat"])


@router.post(
    "/chat",
    response_model=ChatResponse,
    summary="Ask the advisory assistant",
    responses={
        400: {"description": "Input rejected by the security gate"},
        413: {"description": "Request exceeds the token budget"},
        429: {"description": "Admission denied; see Retry-After"},
        502: {"description": "Vendor failure"},
    },
)
async def chat(
    body: ChatRequestBody,
    actor: Actor = Depends(get_actor),
    service: ChatService = Depends(get_chat_service),
) -> ChatResponse:
    result = await service.process(
        actor,
        ChatRequest(
            partition_id=body.partition_id,
            message=body.message,
            session_id=body.session_id,
            history=[m.model_dump() for m in body.history],
        ),
    )
    return ChatResponse(
        chat_id=result.chat_id,
        text=result.text,
        model=result.model,
        usage=UsageResponse(**result.usage.model_dump(include=set(UsageResponse.model_fields))),
        cost=CostResponse(
            input_cost=result.cost.input_cost,
            cache_write_cost=result.cost.cache_write_cost,
            cache_read_cost=result.cost.cache_read_cost,
            output_cost=result.cost.output_cost,
            total=result.cost.total,
        ),
        cache_hit_rate=result.cache_hit_rate,
        cost_savings=result.cost_savings,
    )


@router.post("/chat/{chat_id}/approve", response_model=ApproveResponse)
async def approve_chat(
    chat_id: str,
    body: ApproveRequest,
    actor: Actor = Depends(get_actor),
    service: ChatService = Depends(get_chat_service),
) -> ApproveResponse:
    turn = await service.approve(actor, chat_id, body.final_text)
    return ApproveResponse(chat_id=turn.id, approved=turn.approved, edited=turn.edited)


@router.post("/sessions/{session_id}/open", response_model=SessionResponse, status_code=status.HTTP_200_OK)
async def open_session(
    session_id: str,
    body: SessionRequest,
    actor: Actor = Depends(get_actor),
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    started = await service.open_session(actor, session_id, body.partition_id)
    logger.debug(f"Session open | session={session_id} | started={started}")
    return SessionResponse(
        session_id=session_id, active=service.warmer.is_active(session_id), changed=started
    )


@router.post("/sessions/{session_id}/close", response_model=SessionResponse)
async def close_session(
    session_id: str,
    actor: Actor = Depends(get_actor),
    service: ChatService = Depends(get_chat_service),
) -> SessionResponse:
    stopped = await service.close_session(actor, session_id)
    return SessionResponse(session_id=session_id, active=False, changed=stopped)
