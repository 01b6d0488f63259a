"""
Multi-provider chat client with a single completion call.

Routes a model id to its provider (claude* -> Anthropic, gemini* -> Google,
everything else -> OpenAI) through LangChain chat models, so calling code
never couples to a provider SDK.

Design decisions:
  - Chat models are created lazily per model id, keys passed only to constructors
  - No retries here: SDK-level retries are disabled and workout_ai.retry owns
    retry and fallback
  - Every provider exception is classified at this boundary and re-raised as
    ProviderError(kind); a provider without credentials is MODEL_UNAVAILABLE
  - Cost is tracked per call from counted tokens and the model price table
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

import anthropic
import openai
import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from workout_ai.config import Settings, get_settings
from workout_ai.errors import ProviderError, as_provider_error
from workout_ai.models import FailureKind
from workout_ai.observability import metrics as obs_metrics
from workout_ai.token_estimator import ModelConfigTable, TokenEstimator, TokenizerCache

logger = structlog.get_logger()


class ModelProvider(str, Enum):
    """Available LLM providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


def provider_for_model(model: str) -> ModelProvider:
    name = model.lower()
    if name.startswith("claude"):
        return ModelProvider.ANTHROPIC
    if name.startswith("gemini"):
        return ModelProvider.GOOGLE
    return ModelProvider.OPENAI


# SDK exceptions without an HTTP status; everything else carries status_code/code
_SDK_TIMEOUTS = (openai.APITimeoutError, anthropic.APITimeoutError)
_SDK_CONNECTION_ERRORS = (openai.APIConnectionError, anthropic.APIConnectionError)


def to_provider_error(exc: BaseException, model: str) -> ProviderError:
    """Classify a raw SDK/LangChain exception into a ProviderError."""
    if isinstance(exc, _SDK_TIMEOUTS):
        return ProviderError(str(exc) or "request timed out", kind=FailureKind.TIMEOUT, model=model)
    if isinstance(exc, _SDK_CONNECTION_ERRORS):
        return ProviderError(str(exc) or "connection error", kind=FailureKind.CONNECTION_RESET, model=model)
    return as_provider_error(exc, model=model)


def _content_text(response: Any) -> str:
    """Text of a chat response; Anthropic may return a list of content blocks."""
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content)


class LLMClient:
    """
    Unified chat client for OpenAI, Anthropic and Google models.

    - complete() is the only call; it never retries
    - total_cost accumulates the estimated USD cost of successful calls
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        model_table: Optional[ModelConfigTable] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._table = model_table or ModelConfigTable.from_settings()
        self._models: dict[str, BaseChatModel] = {}
        self._tokenizers = TokenizerCache()
        self._estimators: dict[str, TokenEstimator] = {}
        self._total_cost: float = 0.0

        key_suffix: dict[str, str] = {}
        for provider in ModelProvider:
            key = self._api_key(provider)
            if key:
                key_suffix[provider.value] = f"...{key[-4:]}"
        logger.info(
            "llm_client_initialized",
            key_suffix=key_suffix,
            models_created_on_first_use=True,
        )

    @property
    def total_cost(self) -> float:
        return self._total_cost

    def _api_key(self, provider: ModelProvider) -> str:
        llm = self._settings.llm
        if provider is ModelProvider.ANTHROPIC:
            return (llm.anthropic_api_key or "").strip()
        if provider is ModelProvider.GOOGLE:
            return (llm.google_api_key or "").strip()
        return (llm.openai_api_key or "").strip()

    def _create_model(self, model: str, provider: ModelProvider, api_key: str) -> BaseChatModel:
        llm = self._settings.llm
        if provider is ModelProvider.ANTHROPIC:
            return ChatAnthropic(
                model=model,
                api_key=api_key,
                temperature=llm.temperature,
                max_tokens=llm.max_tokens,
                timeout=llm.request_timeout,
                max_retries=0,
            )
        if provider is ModelProvider.GOOGLE:
            return ChatGoogleGenerativeAI(
                model=model,
                google_api_key=api_key,
                temperature=llm.temperature,
                max_output_tokens=llm.max_tokens,
                timeout=llm.request_timeout,
                max_retries=0,
            )
        return ChatOpenAI(
            model=model,
            api_key=api_key,
            temperature=llm.temperature,
            max_tokens=llm.max_tokens,
            timeout=llm.request_timeout,
            max_retries=0,
        )

    def get_model(self, model: str) -> BaseChatModel:
        """LangChain chat model for a model id, created on first use.

        Raises:
            ProviderError: MODEL_UNAVAILABLE when the provider has no API key.
        """
        if model in self._models:
            return self._models[model]
        provider = provider_for_model(model)
        api_key = self._api_key(provider)
        if not api_key:
            raise ProviderError(
                f"No API key configured for provider {provider.value} (model {model})",
                kind=FailureKind.MODEL_UNAVAILABLE,
                model=model,
            )
        chat = self._create_model(model, provider, api_key)
        self._models[model] = chat
        logger.debug("llm_model_created", model=model, provider=provider.value)
        return chat

    def _estimator(self, model: str) -> TokenEstimator:
        est = self._estimators.get(model)
        if est is None:
            est = TokenEstimator(model, cache=self._tokenizers, model_table=self._table)
            self._estimators[model] = est
        return est

    def _track_cost(self, model: str, task: str, system_prompt: str, user_prompt: str, output: str) -> float:
        est = self._estimator(model)
        input_tokens = est.count_message_tokens([
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ])
        output_tokens = est.count_tokens(output)
        config = est.get_model_config()
        cost = (
            (input_tokens / 1000) * config.input_price_per_k_tokens
            + (output_tokens / 1000) * config.output_price_per_k_tokens
        )
        self._total_cost += cost
        obs_metrics.record_llm_tokens(model=model, task=task, input_tokens=input_tokens, output_tokens=output_tokens)
        obs_metrics.record_llm_cost(model=model, task=task, cost_usd=cost)
        return cost

    async def complete(self, model: str, system_prompt: str, user_prompt: str, task: str = "") -> str:
        """
        One system+user completion against model.

        Raises:
            ProviderError: any provider failure, classified by FailureKind.
        """
        chat = self.get_model(model)
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ]
        async with obs_metrics.track_llm_call(model=model, task=task):
            try:
                response = await chat.ainvoke(messages)
            except Exception as e:
                err = to_provider_error(e, model)
                obs_metrics.record_llm_error(model=model, task=task, failure_kind=err.kind.value)
                logger.warning(
                    "llm_call_failed",
                    model=model,
                    task=task or "unknown",
                    failure_kind=err.kind.value,
                    error=str(e)[:200],
                )
                raise err from e

        content = _content_text(response)
        est = self._estimator(model)
        if not est.loaded:
            await asyncio.to_thread(est.preload)
        cost = self._track_cost(model, task, system_prompt, user_prompt, content)
        logger.debug("llm_call_completed", model=model, task=task or "unknown", cost_usd=round(cost, 6))
        return content

    def close(self) -> None:
        for est in self._estimators.values():
            est.dispose()
        self._estimators.clear()
        self._tokenizers.close()
        self._models.clear()
