"""Tests for configuration loading, log sanitizing and models."""

import pytest
from pydantic import ValidationError

from news_rag.models import ChatRequest, Message, MessageRole, Source
from news_rag.utils import (
    REQUIRED_VARS,
    ConfigurationError,
    Timer,
    load_and_validate_env,
    sanitize_for_logging,
)


@pytest.fixture
def required_env(monkeypatch):
    for var in REQUIRED_VARS:
        monkeypatch.setenv(var, f"value-for-{var.lower()}")
    return monkeypatch


class TestLoadAndValidateEnv:

    def test_defaults_are_applied(self, required_env):
        for var in ("RELEVANCE_THRESHOLD", "SESSION_TTL_SECONDS", "EMBEDDING_DIMENSION"):
            required_env.delenv(var, raising=False)

        config = load_and_validate_env()

        assert config["RELEVANCE_THRESHOLD"] == 0.7
        assert config["SESSION_TTL_SECONDS"] == 3600
        assert config["EMBEDDING_DIMENSION"] == 768

    def test_numeric_values_are_converted(self, required_env):
        required_env.setenv("RETRIEVAL_TOP_K", "8")
        required_env.setenv("RELEVANCE_THRESHOLD", "0.55")

        config = load_and_validate_env()

        assert config["RETRIEVAL_TOP_K"] == 8
        assert config["RELEVANCE_THRESHOLD"] == 0.55

    def test_invalid_numbers_fall_back_to_default(self, required_env):
        required_env.setenv("SESSION_TTL_SECONDS", "an hour")

        assert load_and_validate_env()["SESSION_TTL_SECONDS"] == 3600

    def test_missing_required_variable_raises(self, required_env):
        required_env.delenv("REDIS_URL")

        with pytest.raises(ConfigurationError, match="REDIS_URL"):
            load_and_validate_env()


class TestSanitizeForLogging:

    def test_api_keys_are_masked(self):
        sanitized = sanitize_for_logging("my key is sk-abc123DEF and jina_xyz789")

        assert "sk-abc123DEF" not in sanitized
        assert "jina_xyz789" not in sanitized
        assert sanitized.count("[REDACTED]") == 2

    def test_long_text_is_truncated(self):
        assert sanitize_for_logging("a b " * 200, max_length=20).endswith("...")

    def test_empty_text(self):
        assert sanitize_for_logging("") == ""


def test_timer_measures_duration():
    with Timer("noop") as timer:
        pass

    assert timer.duration_ms >= 0


class TestModels:

    def test_only_bot_messages_carry_sources(self):
        source = Source(title="t", source="s", url="#", relevance_score=0.9)

        with pytest.raises(ValidationError):
            Message(role=MessageRole.USER, content="hello", sources=[source])

    def test_relevance_score_is_bounded(self):
        with pytest.raises(ValidationError):
            Source(title="t", source="s", url="#", relevance_score=1.5)

    def test_chat_request_accepts_camel_case(self):
        request = ChatRequest.model_validate({
            "sessionId": "9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d",
            "message": "What happened today?",
        })

        assert request.session_id == "9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d"

    def test_chat_request_rejects_long_message(self):
        with pytest.raises(ValidationError):
            ChatRequest(session_id="9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d", message="x" * 1001)
