"""Provider adapters for the supported LLM wire protocols."""

from .anthropic_provider import AnthropicProvider
from .base import CompletionRequest, CompletionResult, CompletionStream, ProviderAdapter
from .factory import PROVIDER_FACTORIES, ProviderCache, ProviderCacheStats, ProviderConfig
from .openai_provider import OpenAICompatibleProvider
from .stubs import LocalProvider

__all__ = [
    "ProviderAdapter",
    "CompletionRequest",
    "CompletionResult",
    "CompletionStream",
    "OpenAICompatibleProvider",
    "AnthropicProvider",
    "LocalProvider",
    "ProviderConfig",
    "ProviderCache",
    "ProviderCacheStats",
    "PROVIDER_FACTORIES",
]
