import asyncio
import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MESSAGING_PROVIDER_DEFAULT", "stub")

import app.models  # noqa: F401
from app.core.config import settings
from app.core.deps import get_db
from app.db.base import Base
from app.main import app
from app.services.automation_errors import ProviderFailure
from app.services.automation_service import AutomationEngine, get_automation_engine
from app.services.messaging_provider import MessageSendRequest, MessageSendResult


class RecordingMessagingProvider:
    """Records every send; failures and delays are keyed by message type or recipient."""

    name = "recording"

    def __init__(self):
        self.calls: list[MessageSendRequest] = []
        self.fail_types: set[str] = set()
        self.fail_recipients: set[str] = set()
        self.crash_recipients: set[str] = set()
        self.delays: dict[str, float] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        self.calls.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(request.recipient, 0)
            if delay:
                await asyncio.sleep(delay)
            if request.recipient in self.crash_recipients:
                raise RuntimeError("provider client exploded")
            if request.message_type in self.fail_types or request.recipient in self.fail_recipients:
                raise ProviderFailure(f"{request.message_type} rejected", status_code=400)
        finally:
            self.in_flight -= 1
        return MessageSendResult(provider=self.name, message_id=f"msg-{len(self.calls)}", status="2000")


@pytest.fixture()
def messaging_provider():
    return RecordingMessagingProvider()


@pytest.fixture()
def automation_engine(messaging_provider):
    return AutomationEngine(
        provider=messaging_provider,
        concurrency=settings.automation_dispatch_concurrency,
        dispatch_timeout_seconds=settings.automation_dispatch_timeout_seconds,
    )


@pytest.fixture()
def test_context(automation_engine):
    original_secret = settings.automation_webhook_secret
    settings.automation_webhook_secret = None

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_automation_engine] = lambda: automation_engine

    with TestClient(app) as client:
        yield client, session_local

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)
    settings.automation_webhook_secret = original_secret
