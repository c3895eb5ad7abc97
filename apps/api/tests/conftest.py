import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Union

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from services.errors import UpstreamError
from services.generation import get_generation_client
from services.payments import StripeGateway, get_payment_gateway
from services.session_token import create_session_token


WEBHOOK_SECRET = "whsec_test_secret"
PNG_BASE64 = base64.b64encode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 24).decode("ascii")


def auth_header(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id, email)['token']}"}


def signed_webhook(event: Union[str, Dict[str, Any]], secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None):
    """Serialize ``event`` and build a Stripe-Signature header for it."""
    payload = event if isinstance(event, str) else json.dumps(event)
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={ts},v1={digest}", "Content-Type": "application/json"}


class FakeStripeGateway(StripeGateway):
    """Real signature verification, canned processor responses."""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.created_sessions: List[Dict[str, Any]] = []
        self.pix_intents = set()
        self.subscriptions: Dict[str, Dict[str, str]] = {}
        self.fail_checkout = False

    async def create_checkout_session(self, params):
        if self.fail_checkout:
            raise UpstreamError("Could not create checkout session", detail="processor unavailable")
        self.created_sessions.append(params)
        session_id = f"cs_test_{len(self.created_sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    async def payment_intent_is_pix(self, payment_intent_id):
        return payment_intent_id in self.pix_intents

    async def subscription_metadata(self, subscription_id):
        return dict(self.subscriptions.get(subscription_id, {}))


class FakeGenerationClient:
    def __init__(self):
        self.fail = False
        self.image_calls: List[str] = []
        self.suggestion_calls: List[str] = []

    async def generate_image(self, images, prompt):
        self.image_calls.append(prompt)
        if self.fail:
            raise UpstreamError("Could not generate the image", detail="model overloaded")
        return base64.b64encode(b"generated-image").decode("ascii")

    async def suggest_prompts(self, images, instruction):
        self.suggestion_calls.append(instruction)
        if self.fail:
            raise UpstreamError("Could not generate suggestions", detail="model overloaded")
        return ["A neon portrait in the same style", "The same character on a beach at dusk"]


@pytest.fixture(autouse=True)
def reset_memory_quota_store():
    """Keep in-memory quota state isolated between tests."""
    app.state.memory_quota_store.clear()
    yield
    app.state.memory_quota_store.clear()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "imagenius.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def seed_user(session_maker):
    async def _seed(user_id: str, credits: int = 0, email: Optional[str] = None) -> None:
        async with session_maker() as session:
            session.add(User(id=user_id, email=email or f"{user_id}@example.com", credits=credits))
            await session.commit()

    return _seed


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def fake_generator():
    return FakeGenerationClient()


@pytest_asyncio.fixture
async def api_client(session_maker, fake_gateway, fake_generator):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_generation_client] = lambda: fake_generator
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
    app.dependency_overrides.pop(get_generation_client, None)
