"""
Provider construction and caching.

``ProviderCache`` turns a ``ProviderConfig`` (usually looked up per model id
from a configuration store) into a ready adapter, reusing adapters whose
configuration has not changed. Adapters are stateless per call, so a cached
instance is safe to share between concurrent turns.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from ..exceptions import ConfigError
from .anthropic_provider import AnthropicProvider
from .base import ProviderAdapter
from .openai_provider import OpenAICompatibleProvider
from .stubs import LocalProvider

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """
    Everything needed to build one adapter.

    Attributes:
        provider: Factory name (``openai``, ``deepseek``, ``qianfan``, ``ollama``,
            ``anthropic``, ``local`` or a registered custom name).
        api_key: Vendor API key; falls back to the environment when empty.
        base_url: Endpoint root for OpenAI-compatible vendors.
        model: Default model for requests that do not name one.
        timeout: Request timeout in seconds.
        extra: Additional keyword arguments for the factory.
    """

    provider: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str = ""
    timeout: float = 60.0
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ProviderConfig":
        """Build from a plain mapping, accepting camelCase keys from JSON stores."""
        if "provider" not in data:
            raise ConfigError(component="ProviderConfig", missing_config="provider")
        known = {"provider", "api_key", "apiKey", "base_url", "baseUrl", "model", "timeout"}
        return cls(
            provider=str(data["provider"]).lower(),
            api_key=data.get("api_key") or data.get("apiKey"),
            base_url=data.get("base_url") or data.get("baseUrl"),
            model=data.get("model") or "",
            timeout=float(data.get("timeout") or 60.0),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def cache_key(self) -> str:
        """Stable hash of the configuration; equal configs share an adapter."""
        payload = json.dumps(
            {
                "provider": self.provider,
                "api_key": self.api_key,
                "base_url": self.base_url,
                "model": self.model,
                "timeout": self.timeout,
                "extra": self.extra,
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


ProviderFactory = Callable[[ProviderConfig], ProviderAdapter]


def _openai(config: ProviderConfig) -> ProviderAdapter:
    return OpenAICompatibleProvider(
        api_key=config.api_key,
        base_url=config.base_url,
        default_model=config.model or "gpt-4o-mini",
        timeout=config.timeout,
        name=config.provider,
        **config.extra,
    )


def _ollama(config: ProviderConfig) -> ProviderAdapter:
    # Ollama ignores the key but the SDK requires one
    return OpenAICompatibleProvider(
        api_key=config.api_key or "ollama",
        base_url=config.base_url or "http://localhost:11434/v1",
        default_model=config.model or "llama3.2",
        timeout=config.timeout,
        name="ollama",
        **config.extra,
    )


def _deepseek(config: ProviderConfig) -> ProviderAdapter:
    return OpenAICompatibleProvider(
        api_key=config.api_key,
        base_url=config.base_url or "https://api.deepseek.com/v1",
        default_model=config.model or "deepseek-chat",
        timeout=config.timeout,
        name="deepseek",
        **config.extra,
    )


def _qianfan(config: ProviderConfig) -> ProviderAdapter:
    return OpenAICompatibleProvider(
        api_key=config.api_key,
        base_url=config.base_url or "https://qianfan.baidubce.com/v2",
        default_model=config.model or "ernie-4.0-8k",
        timeout=config.timeout,
        name="qianfan",
        **config.extra,
    )


def _anthropic(config: ProviderConfig) -> ProviderAdapter:
    return AnthropicProvider(
        api_key=config.api_key,
        base_url=config.base_url,
        default_model=config.model or "claude-3-5-sonnet-20241022",
        timeout=config.timeout,
        **config.extra,
    )


def _local(config: ProviderConfig) -> ProviderAdapter:
    return LocalProvider(default_model=config.model or "local-echo", **config.extra)


PROVIDER_FACTORIES: Dict[str, ProviderFactory] = {
    "openai": _openai,
    "deepseek": _deepseek,
    "qianfan": _qianfan,
    "ollama": _ollama,
    "anthropic": _anthropic,
    "local": _local,
}


@dataclass
class ProviderCacheStats:
    """Tracks cache performance metrics."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        total = self.total_requests
        return self.hits / total if total > 0 else 0.0


class ProviderCache:
    """
    Thread-safe LRU cache of adapters keyed by ``ProviderConfig.cache_key()``.

    Args:
        factories: Provider name -> factory table. Defaults to
            ``PROVIDER_FACTORIES``.
        max_size: Maximum number of cached adapters. ``0`` means unbounded.
    """

    def __init__(
        self,
        factories: Optional[Dict[str, ProviderFactory]] = None,
        max_size: int = 64,
    ) -> None:
        if max_size < 0:
            raise ValueError("max_size must be >= 0")
        self._factories: Dict[str, ProviderFactory] = dict(factories or PROVIDER_FACTORIES)
        self._max_size = max_size
        self._data: "OrderedDict[str, ProviderAdapter]" = OrderedDict()
        self._stats = ProviderCacheStats()
        self._lock = threading.Lock()

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Add or replace the factory for ``name``."""
        with self._lock:
            self._factories[name.lower()] = factory

    def get(self, config: ProviderConfig) -> ProviderAdapter:
        """
        Return the adapter for ``config``, building it on first use.

        Raises:
            ConfigError: If no factory is registered for ``config.provider``,
                or the factory rejects the configuration.
        """
        key = config.cache_key()
        with self._lock:
            adapter = self._data.get(key)
            if adapter is not None:
                self._data.move_to_end(key)
                self._stats.hits += 1
                return adapter
            self._stats.misses += 1
            factory = self._factories.get(config.provider.lower())

        if factory is None:
            raise ConfigError(
                component=f"ProviderCache({config.provider})",
                missing_config=(
                    f"a factory for provider '{config.provider}' "
                    f"(known: {', '.join(sorted(self._factories))})"
                ),
            )
        adapter = factory(config)
        logger.info("Built %s adapter for provider '%s'", type(adapter).__name__, config.provider)

        with self._lock:
            if key not in self._data and self._max_size and len(self._data) >= self._max_size:
                self._data.popitem(last=False)
                self._stats.evictions += 1
            self._data[key] = adapter
            self._data.move_to_end(key)
        return adapter

    def invalidate(self, config: Optional[ProviderConfig] = None) -> int:
        """
        Drop the adapter built for ``config``, or every adapter when ``None``.

        Returns:
            The number of adapters removed.
        """
        with self._lock:
            if config is None:
                removed = len(self._data)
                self._data.clear()
                return removed
            return 1 if self._data.pop(config.cache_key(), None) is not None else 0

    @property
    def stats(self) -> ProviderCacheStats:
        return self._stats

    def __len__(self) -> int:
        return len(self._data)


__all__ = [
    "ProviderConfig",
    "ProviderCache",
    "ProviderCacheStats",
    "ProviderFactory",
    "PROVIDER_FACTORIES",
]
