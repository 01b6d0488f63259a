"""
Pre-flight token estimation and cost projection.

Counts tokens with tiktoken so request size and cost can be checked before a
paid model call is made. No network calls are made at request time; if the
tokenizer cannot be loaded at all, counting degrades to ~4 characters per
token instead of failing.

Tokenizers live in an explicit TokenizerCache (model id -> handle) owned by
the estimator or passed in by the caller. Handles are leased per operation
with a context manager, so a lease is always released, including on error
paths. There is no process-wide tokenizer.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Optional

import structlog
import tiktoken

from workout_ai.errors import EstimatorDisposedError
from workout_ai.models import ModelConfig, TokenEstimate

logger = structlog.get_logger()

DEFAULT_MODEL = "gpt-4o-mini"
GENERIC_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4
# Chat framing: <|start|>role<|sep|>content<|end|> per message, then reply priming
MESSAGE_OVERHEAD_TOKENS = 4
REPLY_PRIMING_TOKENS = 3

# ── Context limits and prices (USD per 1K tokens) ──
MODEL_CONFIGS: dict[str, ModelConfig] = {
    "gpt-4o": ModelConfig(context_limit=128000, input_price_per_k_tokens=0.0025, output_price_per_k_tokens=0.01),
    "gpt-4o-mini": ModelConfig(context_limit=128000, input_price_per_k_tokens=0.00015, output_price_per_k_tokens=0.0006),
    "gpt-4-turbo": ModelConfig(context_limit=128000, input_price_per_k_tokens=0.01, output_price_per_k_tokens=0.03),
    "gpt-4": ModelConfig(context_limit=8192, input_price_per_k_tokens=0.03, output_price_per_k_tokens=0.06),
    "gpt-3.5-turbo": ModelConfig(context_limit=16385, input_price_per_k_tokens=0.0005, output_price_per_k_tokens=0.0015),
    "claude-3-5-sonnet-20241022": ModelConfig(
        context_limit=200000, input_price_per_k_tokens=0.003, output_price_per_k_tokens=0.015
    ),
    "claude-3-opus-20240229": ModelConfig(
        context_limit=200000, input_price_per_k_tokens=0.015, output_price_per_k_tokens=0.075
    ),
    "claude-3-haiku-20240307": ModelConfig(
        context_limit=200000, input_price_per_k_tokens=0.00025, output_price_per_k_tokens=0.00125
    ),
}


class ModelConfigTable:
    """Overridable model id -> ModelConfig lookup with a designated default entry."""

    def __init__(
        self,
        configs: Optional[Mapping[str, ModelConfig]] = None,
        default_model: str = DEFAULT_MODEL,
    ) -> None:
        self._configs: dict[str, ModelConfig] = dict(MODEL_CONFIGS if configs is None else configs)
        if default_model not in self._configs:
            raise ValueError(f"Default model {default_model!r} has no config entry")
        self.default_model = default_model

    def get(self, model: str) -> ModelConfig:
        """Config for model, or the default entry for unrecognized ids. Never fails."""
        return self._configs.get(model) or self._configs[self.default_model]

    def __contains__(self, model: object) -> bool:
        return model in self._configs

    def with_overrides(self, overrides: Mapping[str, Mapping[str, Any]]) -> "ModelConfigTable":
        """New table with entries added or replaced (YAML-shaped dicts)."""
        merged = dict(self._configs)
        for model, raw in overrides.items():
            merged[model] = ModelConfig.model_validate(dict(raw))
        return ModelConfigTable(merged, default_model=self.default_model)

    @classmethod
    def from_settings(cls) -> "ModelConfigTable":
        """Built-in table merged with config/models.yaml."""
        from workout_ai.config import get_settings

        table_cfg = get_settings().model_table
        base = cls(default_model=DEFAULT_MODEL)
        overrides = table_cfg.get("models") or {}
        table = base.with_overrides(overrides) if overrides else base
        default = table_cfg.get("default_model")
        if default and default != table.default_model:
            table = ModelConfigTable(table._configs, default_model=default)
        return table


def tiktoken_model_for(model: str) -> Optional[str]:
    """tiktoken model name for a model family, or None when only the generic encoding fits."""
    name = model.lower()
    if "gpt-4o" in name:
        return "gpt-4o"
    if "gpt-4" in name:
        return "gpt-4"
    if "gpt-3.5" in name:
        return "gpt-3.5-turbo"
    return None


class TokenizerHandle:
    """A loaded tokenizer for one model. encoding=None means heuristic counting."""

    def __init__(self, model: str, encoding: Optional[tiktoken.Encoding]) -> None:
        self.model = model
        self.encoding = encoding
        self.leases = 0

    @property
    def exact(self) -> bool:
        return self.encoding is not None

    def encode(self, text: str) -> list[int]:
        if self.encoding is None:
            raise RuntimeError("heuristic tokenizer cannot encode")
        # Special-token text in prompts is counted as ordinary text
        return self.encoding.encode(text, disallowed_special=())

    def decode(self, tokens: Sequence[int]) -> str:
        if self.encoding is None:
            raise RuntimeError("heuristic tokenizer cannot decode")
        return self.encoding.decode(list(tokens))

    def count(self, text: str) -> int:
        if self.encoding is None:
            return math.ceil(len(text) / CHARS_PER_TOKEN)
        return len(self.encode(text))


def _load_encoding(model: str) -> Optional[tiktoken.Encoding]:
    family = tiktoken_model_for(model)
    try:
        if family is not None:
            try:
                return tiktoken.encoding_for_model(family)
            except KeyError:
                pass
        return tiktoken.get_encoding(GENERIC_ENCODING)
    except Exception as e:
        # BPE files are fetched on first use; offline hosts end up here
        logger.warning("tokenizer_unavailable", model=model, error=str(e)[:200])
        return None


class TokenizerCache:
    """Model id -> tokenizer handle, with leased access."""

    def __init__(self) -> None:
        self._handles: dict[str, TokenizerHandle] = {}
        self._lock = threading.Lock()

    def __contains__(self, model: object) -> bool:
        return model in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def _get_or_load(self, model: str) -> TokenizerHandle:
        with self._lock:
            handle = self._handles.get(model)
            if handle is None:
                handle = TokenizerHandle(model, _load_encoding(model))
                self._handles[model] = handle
                logger.debug("tokenizer_loaded", model=model, exact=handle.exact)
            handle.leases += 1
            return handle

    def preload(self, model: str) -> None:
        """Load the handle for model without leasing it."""
        handle = self._get_or_load(model)
        with self._lock:
            handle.leases -= 1

    @contextmanager
    def acquire(self, model: str) -> Iterator[TokenizerHandle]:
        """Lease the handle for model for the duration of the block."""
        handle = self._get_or_load(model)
        try:
            yield handle
        finally:
            with self._lock:
                handle.leases -= 1

    def evict(self, model: str) -> bool:
        """Drop the handle for model unless it is leased. Returns True if dropped."""
        with self._lock:
            handle = self._handles.get(model)
            if handle is None or handle.leases > 0:
                return False
            del self._handles[model]
            return True

    def close(self) -> None:
        with self._lock:
            self._handles.clear()


class TokenEstimator:
    """Model-aware token counting and cost projection."""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        cache: Optional[TokenizerCache] = None,
        model_table: Optional[ModelConfigTable] = None,
    ) -> None:
        self.model = model
        self._owns_cache = cache is None
        self._cache = cache if cache is not None else TokenizerCache()
        self._table = model_table if model_table is not None else ModelConfigTable()
        self._disposed = False

    def __enter__(self) -> "TokenEstimator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def loaded(self) -> bool:
        return self.model in self._cache

    def preload(self) -> None:
        """Load the tokenizer now; the first load may fetch BPE files over the network."""
        if self._disposed:
            raise EstimatorDisposedError(f"TokenEstimator for {self.model} has been disposed")
        self._cache.preload(self.model)

    @contextmanager
    def _tokenizer(self) -> Iterator[TokenizerHandle]:
        if self._disposed:
            raise EstimatorDisposedError(f"TokenEstimator for {self.model} has been disposed")
        with self._cache.acquire(self.model) as handle:
            yield handle

    def count_tokens(self, text: str) -> int:
        """Tokens in text for this model; 0 for the empty string."""
        with self._tokenizer() as tok:
            return tok.count(text)

    def count_message_tokens(self, messages: Sequence[Mapping[str, str]]) -> int:
        """Tokens for a chat message list, including per-message framing and reply priming."""
        with self._tokenizer() as tok:
            total = 0
            for message in messages:
                total += MESSAGE_OVERHEAD_TOKENS
                total += tok.count(message.get("role", ""))
                total += tok.count(message.get("content", ""))
            return total + REPLY_PRIMING_TOKENS

    def estimate_request(
        self,
        system_prompt: str,
        user_prompt: str,
        output_ratio: float = 0.5,
    ) -> TokenEstimate:
        """Estimate tokens and cost for a system+user request.

        Output tokens are a fixed fraction of input tokens; pass a different
        output_ratio for task types whose replies run longer or shorter.
        """
        if output_ratio < 0:
            raise ValueError("output_ratio must be >= 0")
        input_tokens = self.count_message_tokens([
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ])
        output_tokens = math.ceil(input_tokens * output_ratio)
        total = input_tokens + output_tokens
        config = self.get_model_config()
        cost = (
            (input_tokens / 1000) * config.input_price_per_k_tokens
            + (output_tokens / 1000) * config.output_price_per_k_tokens
        )
        estimate = TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            total_tokens=total,
            estimated_cost=cost,
            model_context_limit=config.context_limit,
            within_budget=total < config.context_limit,
        )
        logger.debug(
            "token_estimate",
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=round(cost, 6),
        )
        return estimate

    def truncate_to_token_limit(self, text: str, max_tokens: int) -> str:
        """Longest prefix of text that encodes to at most max_tokens tokens."""
        if max_tokens <= 0:
            return ""
        with self._tokenizer() as tok:
            if not tok.exact:
                return text[: max_tokens * CHARS_PER_TOKEN]
            tokens = tok.encode(text)
            if len(tokens) <= max_tokens:
                return text
            # Decoding a cut multi-byte token can re-encode longer; shrink until it fits
            keep = max_tokens
            while keep > 0:
                candidate = tok.decode(tokens[:keep])
                if len(tok.encode(candidate)) <= max_tokens:
                    return candidate
                keep -= 1
            return ""

    def get_model_config(self) -> ModelConfig:
        return self._table.get(self.model)

    def dispose(self) -> None:
        """Release the tokenizer. Counting afterwards raises EstimatorDisposedError."""
        if self._disposed:
            return
        self._disposed = True
        if self._owns_cache:
            self._cache.close()
        else:
            self._cache.evict(self.model)


class EstimatorProvider:
    """Holds one estimator, replacing (and disposing) it when another model is requested."""

    def __init__(
        self,
        cache: Optional[TokenizerCache] = None,
        model_table: Optional[ModelConfigTable] = None,
    ) -> None:
        self._cache = cache if cache is not None else TokenizerCache()
        self._table = model_table
        self._current: Optional[TokenEstimator] = None
        self._lock = threading.Lock()

    def get(self, model: str = DEFAULT_MODEL) -> TokenEstimator:
        with self._lock:
            if self._current is None or self._current.model != model or self._current.disposed:
                if self._current is not None:
                    self._current.dispose()
                self._current = TokenEstimator(model, cache=self._cache, model_table=self._table)
            return self._current

    def close(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.dispose()
                self._current = None
            self._cache.close()
