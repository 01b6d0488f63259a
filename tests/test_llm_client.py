"""Tests for LLM client: provider routing, lazy model creation, cost tracking, error classification."""

from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import openai
import pytest
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage
from langchain_openai import ChatOpenAI

from workout_ai.config import LLMConfig, Settings
from workout_ai.errors import ProviderError
from workout_ai.llm_client import (
    LLMClient,
    ModelProvider,
    _content_text,
    provider_for_model,
    to_provider_error,
)
from workout_ai.models import FailureKind
from workout_ai.token_estimator import ModelConfigTable

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat")


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Error code: {status_code}")
        self.status_code = status_code


def _client(openai_key: str = "", anthropic_key: str = "", google_key: str = "") -> LLMClient:
    settings = Settings(llm=LLMConfig(
        OPENAI_API_KEY=openai_key,
        ANTHROPIC_API_KEY=anthropic_key,
        GOOGLE_API_KEY=google_key,
    ))
    return LLMClient(settings=settings, model_table=ModelConfigTable())


def _fake_chat(**ainvoke_kwargs) -> MagicMock:
    chat = MagicMock()
    chat.ainvoke = AsyncMock(**ainvoke_kwargs)
    return chat


@pytest.mark.parametrize(
    "model,provider",
    [
        ("gpt-4o-mini", ModelProvider.OPENAI),
        ("gpt-4-turbo", ModelProvider.OPENAI),
        ("claude-3-5-sonnet-20241022", ModelProvider.ANTHROPIC),
        ("gemini-1.5-pro", ModelProvider.GOOGLE),
        ("some-new-model", ModelProvider.OPENAI),
    ],
)
def test_provider_for_model(model: str, provider: ModelProvider) -> None:
    assert provider_for_model(model) is provider


def test_missing_key_is_model_unavailable() -> None:
    client = _client()
    with pytest.raises(ProviderError) as exc_info:
        client.get_model("claude-3-haiku-20240307")
    assert exc_info.value.kind is FailureKind.MODEL_UNAVAILABLE
    assert exc_info.value.model == "claude-3-haiku-20240307"


def test_models_are_created_lazily_and_cached() -> None:
    client = _client(openai_key="sk-test-0000", anthropic_key="sk-ant-test-0000")
    assert client._models == {}
    gpt = client.get_model("gpt-4o-mini")
    claude = client.get_model("claude-3-haiku-20240307")
    assert isinstance(gpt, ChatOpenAI)
    assert isinstance(claude, ChatAnthropic)
    assert client.get_model("gpt-4o-mini") is gpt
    assert gpt.max_retries == 0


@pytest.mark.asyncio
async def test_complete_returns_text_and_tracks_cost() -> None:
    client = _client(openai_key="sk-test-0000")
    chat = _fake_chat(return_value=AIMessage(content='{"ok": true}'))
    client._models["gpt-4o-mini"] = chat

    text = await client.complete("gpt-4o-mini", "You are a coach.", "Plan a week.", task="worker")

    assert text == '{"ok": true}'
    assert client.total_cost > 0
    messages = chat.ainvoke.await_args.args[0]
    assert [m.content for m in messages] == ["You are a coach.", "Plan a week."]
    client.close()


@pytest.mark.asyncio
async def test_complete_classifies_provider_errors() -> None:
    client = _client(openai_key="sk-test-0000")
    cause = _StatusError(429)
    client._models["gpt-4o"] = _fake_chat(side_effect=cause)

    with pytest.raises(ProviderError) as exc_info:
        await client.complete("gpt-4o", "sys", "user")

    assert exc_info.value.kind is FailureKind.RATE_LIMITED
    assert exc_info.value.model == "gpt-4o"
    assert exc_info.value.__cause__ is cause
    assert client.total_cost == 0.0


@pytest.mark.asyncio
async def test_complete_without_key_never_calls_provider() -> None:
    client = _client()
    with pytest.raises(ProviderError) as exc_info:
        await client.complete("gpt-4o-mini", "sys", "user")
    assert exc_info.value.kind is FailureKind.MODEL_UNAVAILABLE


def test_sdk_timeouts_and_connection_errors() -> None:
    assert to_provider_error(openai.APITimeoutError(request=_REQUEST), "gpt-4o").kind is FailureKind.TIMEOUT
    assert to_provider_error(anthropic.APITimeoutError(request=_REQUEST), "claude").kind is FailureKind.TIMEOUT
    conn = openai.APIConnectionError(request=_REQUEST)
    assert to_provider_error(conn, "gpt-4o").kind is FailureKind.CONNECTION_RESET


def test_status_errors_fall_through_to_classification() -> None:
    assert to_provider_error(_StatusError(503), "gpt-4o").kind is FailureKind.SERVER_OVERLOADED
    assert to_provider_error(_StatusError(401), "gpt-4o").kind is FailureKind.INVALID_INPUT


def test_content_text_joins_blocks() -> None:
    assert _content_text(AIMessage(content="plain")) == "plain"
    blocks = AIMessage(content=[
        {"type": "text", "text": '{"a": '},
        {"type": "tool_use", "id": "x", "name": "n", "input": {}},
        {"type": "text", "text": "1}"},
    ])
    assert _content_text(blocks) == '{"a": 1}'
