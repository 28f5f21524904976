import dataclasses
import os

os.environ.setdefault("TESTING", "1")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///./test_touchrelay.db")

import pytest

from src.backend.app import models as dbm  # noqa: F401  (registers tables)
from src.backend.app import rate_limit
from src.backend.app.config import Settings
from src.backend.app.db import Base, SessionLocal, engine


BASE_SETTINGS = Settings(
    public_base_url="https://relay.example.test",
    cookie_domain=".example.test",
    cookies_secure=False,
    allowed_origins=("https://www.example.test",),
    default_event_source_url="https://www.example.test",
    acuity_user_id="42",
    acuity_api_key="acuity-key",
    acuity_trial_type_ids=frozenset({"555"}),
    acuity_field_va_attrib_id=101,
    acuity_field_gclid_id=102,
)


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    rate_limit.reset()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_settings():
    def _make(**overrides) -> Settings:
        return dataclasses.replace(BASE_SETTINGS, **overrides)

    return _make
