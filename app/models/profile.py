import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Text, Uuid, text
from sqlalchemy.sql import func

from app.database import Base


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    slug = Column(Text, nullable=False, unique=True)
    business_name = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
    profession = Column(Text, nullable=False, default="")
    profession_ru = Column(Text)
    profession_en = Column(Text)
    theme_color = Column(Text, default="#2563EB")
    profile_image_url = Column(Text)

    # Knowledge tiers: public KB (+ localized variants) and private vault.
    knowledge_base = Column(Text)
    knowledge_base_ru = Column(Text)
    knowledge_base_en = Column(Text)
    private_vault = Column(Text)

    is_active = Column(Boolean, nullable=False, default=True)
    onboarding_complete = Column(Boolean, nullable=False, default=False)
    is_pro = Column(Boolean, nullable=False, default=False)
    is_master = Column(Boolean, nullable=False, default=False)
    pro_expires_at = Column(DateTime(timezone=True))
    billing_customer_id = Column(Text)

    # CRM (Altegio)
    altegio_partner_token = Column(Text)
    altegio_user_token = Column(Text)
    altegio_company_id = Column(Text)
    altegio_auto_send = Column(Boolean, nullable=False, default=False)

    # Generic webhook
    webhook_url = Column(Text)
    webhook_secret = Column(Text)
    webhook_auto_send = Column(Boolean, nullable=False, default=False)

    # WhatsApp owner notifications and channel
    whatsapp_number = Column(Text)
    whatsapp_auto_notify = Column(Boolean, nullable=False, default=False)
    whatsapp_summary_enabled = Column(Boolean, nullable=False, default=False)
    whatsapp_summary_frequency = Column(Text, nullable=False, default="daily")
    whatsapp_summary_last_sent = Column(DateTime(timezone=True))
    whatsapp_missed_alerts_enabled = Column(Boolean, nullable=False, default=False)
    whatsapp_chat_enabled = Column(Boolean, nullable=False, default=False)
    whatsapp_followup_enabled = Column(Boolean, nullable=False, default=False)
    whatsapp_followup_hours = Column(Integer, nullable=False, default=24)
    whatsapp_appointment_confirm = Column(Boolean, nullable=False, default=False)

    telegram_chat_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # At most one master profile platform-wide.
        Index(
            "uq_profiles_single_master",
            "is_master",
            unique=True,
            postgresql_where=text("is_master"),
            sqlite_where=text("is_master = 1"),
        ),
    )
