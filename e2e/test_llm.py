"""LLM client tests.

Tests for the LLMClient abstraction and OpenRouterClient implementation.

TestLLMClientAbstract  — no API key needed, runs in CI
TestOpenRouterClient   — SDK responses are faked on the client instance; the
                         real API call test is skipped if OPENROUTER_API_KEY
                         is not set in the environment or .env file
"""

import os
from types import SimpleNamespace

import httpx
import openai
import pytest

from core.errors import IntegrationError
from llm.base import LLMClient
from llm.openrouter import OpenRouterClient


def _fake_create(content=None, exc=None):
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        if exc is not None:
            raise exc
        choices = [] if content is None else [SimpleNamespace(message=SimpleNamespace(content=content))]
        return SimpleNamespace(choices=choices)

    return create, calls


# ── LLMClient (abstract) ──────────────────────────────────────────────────────

class TestLLMClientAbstract:
    def test_cannot_instantiate_directly(self):
        """LLMClient is abstract — instantiating it directly must raise."""
        with pytest.raises(TypeError, match="abstract"):
            LLMClient()

    def test_subclass_without_complete_raises(self):
        class IncompleteClient(LLMClient):
            pass

        with pytest.raises(TypeError, match="abstract"):
            IncompleteClient()

    def test_subclass_with_complete_is_instantiable(self):
        class ConcreteClient(LLMClient):
            async def complete(self, system: str, user: str) -> str:
                return "ok"

        assert isinstance(ConcreteClient(), LLMClient)


# ── OpenRouterClient ──────────────────────────────────────────────────────────

class TestOpenRouterClient:
    def test_raises_immediately_if_api_key_missing(self, monkeypatch):
        """Missing key must raise KeyError at construction, not at first call."""
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(KeyError):
            OpenRouterClient(model="anthropic/claude-sonnet-4-6")

    def test_explicit_key_needs_no_environment(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        client = OpenRouterClient(model="anthropic/claude-sonnet-4-6", api_key="sk-test")
        assert client.model == "anthropic/claude-sonnet-4-6"
        assert client.temperature == 0.0

    def test_is_subclass_of_llm_client(self):
        assert issubclass(OpenRouterClient, LLMClient)

    async def test_complete_sends_system_and_user(self):
        client = OpenRouterClient(model="m", api_key="sk-test")
        create, calls = _fake_create(content="pong")
        client.client.chat.completions.create = create

        assert await client.complete(system="be brief", user="ping") == "pong"
        assert calls[0]["model"] == "m"
        assert calls[0]["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "ping"},
        ]

    async def test_empty_response_raises(self):
        client = OpenRouterClient(model="m", api_key="sk-test")
        client.client.chat.completions.create, _ = _fake_create(content="")

        with pytest.raises(IntegrationError, match="empty response"):
            await client.complete(system="s", user="u")

    async def test_api_error_is_wrapped(self):
        client = OpenRouterClient(model="m", api_key="sk-test")
        error = openai.APIConnectionError(request=httpx.Request("POST", "https://openrouter.ai/api/v1"))
        client.client.chat.completions.create, _ = _fake_create(exc=error)

        with pytest.raises(IntegrationError) as excinfo:
            await client.complete(system="s", user="u")
        assert excinfo.value.service == "openrouter"

    @pytest.mark.skipif(
        not os.getenv("OPENROUTER_API_KEY"),
        reason="OPENROUTER_API_KEY not set — skipping live API call",
    )
    @pytest.mark.live
    async def test_real_api_call_returns_string(self):
        """Make a real call to OpenRouter and verify we get a non-empty string back."""
        client = OpenRouterClient(model="google/gemini-2.0-flash-001")
        response = await client.complete(
            system="You are a test assistant. Reply with one word only, no punctuation.",
            user="Say the word pong.",
        )
        assert isinstance(response, str)
        assert len(response.strip()) > 0
