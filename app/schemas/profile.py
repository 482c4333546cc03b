from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProfileCreate(BaseModel):
    business_name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = None
    profession: str = ""
    knowledge_base: Optional[str] = None
    theme_color: Optional[str] = None


class ProfileResponse(BaseModel):
    id: UUID
    slug: str
    business_name: str
    display_name: str
    profession: str
    is_master: bool
    onboarding_complete: bool

    model_config = ConfigDict(from_attributes=True)


class PublicProfile(BaseModel):
    slug: str
    display_name: str
    profession: str
    theme_color: Optional[str] = None
    profile_image_url: Optional[str] = None


class IntegrationsUpdate(BaseModel):
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_auto_send: Optional[bool] = None
    altegio_partner_token: Optional[str] = None
    altegio_user_token: Optional[str] = None
    altegio_company_id: Optional[str] = None
    altegio_auto_send: Optional[bool] = None
    whatsapp_number: Optional[str] = None
    whatsapp_auto_notify: Optional[bool] = None
    whatsapp_summary_enabled: Optional[bool] = None
    whatsapp_summary_frequency: Optional[str] = Field(default=None, pattern="^(daily|weekly)$")
    whatsapp_missed_alerts_enabled: Optional[bool] = None
    whatsapp_chat_enabled: Optional[bool] = None
    whatsapp_followup_enabled: Optional[bool] = None
    whatsapp_followup_hours: Optional[int] = Field(default=None, ge=1, le=168)
    whatsapp_appointment_confirm: Optional[bool] = None
    telegram_chat_enabled: Optional[bool] = None


class TranslateResponse(BaseModel):
    success: bool
    translated: list[str] = []
    error: Optional[str] = None


class MasterResponse(BaseModel):
    success: bool
    profile_id: UUID
