"""Shared fixtures for all tests."""

import jwt
import pytest

from coach_backend.core.database import init_db

TEST_JWT_SECRET = "test-secret-for-fitcoach-hs256-tokens"


class FakeLLMAdapter:
    """Stands in for LLMAdapter: records prompts, returns queued replies then a canned one."""

    cerebras_key = "test-cerebras-key"
    groq_key = "test-groq-key"

    def __init__(self, reply: str = "Great question! Start with three sets of ten squats."):
        self.reply = reply
        self.error: Exception | None = None
        self.queued: list[str] = []
        self.calls: list[list] = []

    def is_healthy(self) -> bool:
        return True

    def generate(self, messages) -> str:
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        if self.queued:
            return self.queued.pop(0)
        return self.reply


@pytest.fixture
def db():
    """Fresh in-memory database for each test."""
    init_db("sqlite:///:memory:")
    yield


@pytest.fixture
def fake_llm() -> FakeLLMAdapter:
    return FakeLLMAdapter()


@pytest.fixture
def make_token(monkeypatch):
    """Factory for bearer tokens signed with the test secret."""
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.delenv("AUTH_JWT_AUDIENCE", raising=False)

    def _make(sub: str = "user-1", **claims) -> str:
        return jwt.encode({"sub": sub, **claims}, TEST_JWT_SECRET, algorithm="HS256")

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(sub: str = "user-1") -> dict:
        return {"Authorization": f"Bearer {make_token(sub)}"}

    return _headers


@pytest.fixture
def client(db, fake_llm, make_token, monkeypatch, tmp_path):
    """TestClient over the app with an in-memory DB and a fake LLM.

    The lifespan is not run; the fixture does its setup instead.
    """
    from fastapi.testclient import TestClient

    from coach_backend import main

    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("FREE_DAILY_MESSAGES", "10")
    monkeypatch.setenv("MEMORY_EXTRACTION", "false")
    monkeypatch.delenv("DEBUG_ERRORS", raising=False)
    main._rate_buckets.clear()
    main.app.state.llm_adapter = fake_llm

    yield TestClient(main.app)

    main._rate_buckets.clear()
