import os

# Must be set before app.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.database import Base, SessionLocal, engine, get_db  # noqa: E402
from app.models import Profile  # noqa: E402
from app.services.alert_service import reset_alert_cooldowns  # noqa: E402
from app.services.rate_limit_service import reset_rate_limits  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_rate_limits()
    reset_alert_cooldowns()
    yield
    reset_rate_limits()
    reset_alert_cooldowns()


@pytest.fixture
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    from app.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_profile(db):
    counter = {"n": 0}

    def factory(**overrides) -> Profile:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "user_id": f"user-{n}",
            "slug": f"biz{n}",
            "business_name": f"Business {n}",
            "display_name": f"Business {n}",
            "profession": "Hair salon",
            "knowledge_base": "Haircut costs 30 AZN. Open 10:00-20:00.",
            "whatsapp_chat_enabled": True,
            "telegram_chat_enabled": True,
        }
        values.update(overrides)
        profile = Profile(**values)
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    return factory
