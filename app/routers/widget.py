"""Public web widget: profile card and visitor chat."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.logging_config import get_logger
from app.schemas.chat import ChatRequest, ChatResponse
from app.schemas.profile import PublicProfile
from app.services import knowledge_service, profile_service
from app.services.chat_service import handle_customer_turn
from app.services.identity_service import WEB
from app.services.lead_service import dispatch_lead_events_task
from app.services.result import (
    INJECTION_BLOCKED,
    MESSAGE_TOO_LONG,
    NO_KNOWLEDGE_BASE,
    NO_PROFILE,
    RATE_LIMITED,
)

logger = get_logger("widget")

router = APIRouter()

# Injection deflection is a normal reply from the visitor's point of view.
ERROR_STATUS = {
    NO_PROFILE: status.HTTP_404_NOT_FOUND,
    NO_KNOWLEDGE_BASE: status.HTTP_404_NOT_FOUND,
    RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    MESSAGE_TOO_LONG: status.HTTP_400_BAD_REQUEST,
    INJECTION_BLOCKED: status.HTTP_200_OK,
}


@router.get("/profiles/{slug}", response_model=PublicProfile)
def get_public_profile(slug: str, language: str | None = None, db: Session = Depends(get_db)):
    profile = profile_service.get_public_profile(db, slug)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return PublicProfile(
        slug=profile.slug,
        display_name=profile.display_name,
        profession=knowledge_service.select_profession(profile, language),
        theme_color=profile.theme_color,
        profile_image_url=profile.profile_image_url,
    )


@router.post("/chat", response_model=ChatResponse)
def chat(request: ChatRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    # The widget is bound to its page's slug; that slug must exist.
    if profile_service.get_public_profile(db, request.slug) is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=ChatResponse(reply=knowledge_service.fallback_reply(request.language), error=NO_PROFILE).model_dump(),
        )

    result = handle_customer_turn(
        db,
        WEB,
        request.session_token,
        request.message,
        language=request.language,
        explicit_slug=request.slug,
    )
    if not result.ok:
        reply = result.fallback_reply or knowledge_service.fallback_reply(request.language)
        return JSONResponse(
            status_code=ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST),
            content=ChatResponse(reply=reply, error=result.error_code).model_dump(),
        )

    turn = result.value
    background_tasks.add_task(
        dispatch_lead_events_task,
        turn.profile_id,
        turn.session_id,
        turn.customer_text,
        turn.reply,
    )
    return ChatResponse(reply=turn.reply, session_id=turn.session_id)
