"""
Chat Routes

FastAPI endpoint for the natural-language query chat.
"""

import logging

from fastapi import APIRouter, Header, HTTPException, status

from chatbi.models.api import ChatRequest, ChatResponse
from chatbi.models.chat import UserContext
from chatbi.pipeline.orchestrator import ChatPipeline, ChatTurn, PipelineRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_pipeline() -> ChatPipeline:
    from chatbi.api.main import app_state

    pipeline = app_state.get("pipeline")
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat pipeline is unavailable. Ensure SYSTEM_DATABASE_URL and the LLM provider are configured.",
        )
    return pipeline


@router.post("/chat", response_model=ChatResponse)
async def chat(
    chat_request: ChatRequest,
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_role: str = Header("user", alias="X-User-Role"),
    x_organization_id: str | None = Header(None, alias="X-Organization-Id"),
    x_user_email: str | None = Header(None, alias="X-User-Email"),
    x_user_name: str | None = Header(None, alias="X-User-Name"),
) -> ChatResponse:
    """
    Answer one chat turn.

    Pipeline errors propagate to the application's exception handlers,
    which render them with the work process collected so far.

    Raises:
        HTTPException: 404 unknown connection, 400 bad input, 503 pipeline missing
    """
    pipeline = _get_pipeline()
    user = UserContext(
        user_id=x_user_id,
        role=x_user_role,
        organization_id=x_organization_id,
        email=x_user_email,
        name=x_user_name,
    )
    logger.info(
        f"Chat request received ({len(chat_request.messages)} messages)",
        extra={"user_id": user.user_id, "connection_id": chat_request.database_connection_id},
    )

    try:
        request = PipelineRequest(
            messages=[
                ChatTurn(role=m.role, content=m.content)
                for m in chat_request.messages
                if m.role in ("user", "assistant", "system")
            ],
            connection_id=chat_request.database_connection_id,
            session_id=chat_request.session_id,
            agent_id=chat_request.agent_id,
            user=user,
            database_schema=chat_request.database_schema,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not request.question:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="No user message to answer."
        )

    try:
        result = await pipeline.run(request)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Database connection not found: {chat_request.database_connection_id}",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RuntimeError as exc:
        logger.error(f"Pipeline not ready: {exc}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat pipeline is not ready. Please try again later.",
        ) from exc

    return ChatResponse(
        message=result.message,
        query_result=result.query_result,
        sql=result.sql,
        work_process=result.work_process,
        session_id=result.session_id,
        attribution_analysis=result.attribution_analysis,
        ai_report=result.ai_report,
        metadata={
            "status": result.status,
            "intent": result.intent,
            "displayFormat": result.display_format,
            **result.metadata,
        },
    )
