"""Profile onboarding and settings for owners, plus the admin master switch."""

import hmac
import os
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models import Profile
from app.routers.owner_chat import require_user_id
from app.schemas.profile import (
    IntegrationsUpdate,
    MasterResponse,
    ProfileCreate,
    ProfileResponse,
    TranslateResponse,
)
from app.services import knowledge_service, master_service, profile_service
from app.services.result import INVALID_URL

router = APIRouter()

CREATE_ERROR_STATUS = {
    "profile_exists": status.HTTP_409_CONFLICT,
    "slug_taken": status.HTTP_409_CONFLICT,
    "invalid_slug": status.HTTP_400_BAD_REQUEST,
}


def _require_admin_token(provided: Optional[str]) -> None:
    expected = os.environ.get("ADMIN_TOKEN")
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def _current_profile(db: Session, user_id: str) -> Profile:
    profile = profile_service.get_owner_profile(db, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile


@router.post("/profiles", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def create_profile(request: ProfileCreate, user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    result = profile_service.create_profile(
        db,
        user_id,
        request.business_name,
        slug=request.slug,
        profession=request.profession,
        knowledge_base=request.knowledge_base,
        theme_color=request.theme_color,
    )
    if not result.ok:
        raise HTTPException(status_code=CREATE_ERROR_STATUS.get(result.error_code, 400), detail=result.error)
    return result.value


@router.patch("/profiles/me/integrations", response_model=ProfileResponse)
def update_integrations(
    request: IntegrationsUpdate,
    user_id: str = Depends(require_user_id),
    db: Session = Depends(get_db),
):
    profile = _current_profile(db, user_id)
    result = profile_service.update_integrations(db, profile.id, request.model_dump(exclude_unset=True))
    if not result.ok:
        code = status.HTTP_400_BAD_REQUEST if result.error_code == INVALID_URL else status.HTTP_404_NOT_FOUND
        raise HTTPException(status_code=code, detail=result.error)
    return result.value


@router.post("/profiles/me/translate", response_model=TranslateResponse)
def translate_profile(user_id: str = Depends(require_user_id), db: Session = Depends(get_db)):
    profile = _current_profile(db, user_id)
    result = knowledge_service.translate_profile(db, profile.id)
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=result.error)
    return TranslateResponse(success=True, translated=sorted(result.value))


@router.post("/profiles/{profile_id}/master", response_model=MasterResponse)
def set_master(
    profile_id: UUID,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    db: Session = Depends(get_db),
):
    _require_admin_token(x_admin_token)
    profile = master_service.promote_master(db, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return MasterResponse(success=True, profile_id=profile.id)
