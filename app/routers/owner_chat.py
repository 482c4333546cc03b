"""Owner console chat. The user id comes from the upstream auth gateway."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.owner_chat import (
    OwnerChatHistoryItem,
    OwnerChatHistoryResponse,
    OwnerChatRequest,
    OwnerChatResponse,
)
from app.services.owner_chat_service import ACTION_RATE_LIMITED, get_owner_history, handle_owner_message

router = APIRouter()


def require_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user id")
    return x_user_id.strip()


@router.post("/owner-chat", response_model=OwnerChatResponse)
def owner_chat(
    request: OwnerChatRequest,
    user_id: str = Depends(require_user_id),
    x_master_token: Optional[str] = Header(default=None, alias="X-Master-Token"),
    db: Session = Depends(get_db),
):
    result = handle_owner_message(db, user_id, request.message, master_token=x_master_token)
    if result.action == ACTION_RATE_LIMITED:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=result.reply)
    return OwnerChatResponse(
        reply=result.reply,
        action=result.action,
        target=result.target,
        master_token=result.master_token,
    )


@router.get("/owner-chat/history", response_model=OwnerChatHistoryResponse)
def owner_chat_history(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    items = [OwnerChatHistoryItem(**item) for item in get_owner_history(db, user_id, limit=100)]
    return OwnerChatHistoryResponse(messages=items)
