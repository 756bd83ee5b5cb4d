"""
Tests for ProviderConfig and the adapter cache.
"""

from __future__ import annotations

import pytest

from convogate.exceptions import ConfigError
from convogate.providers import LocalProvider, OpenAICompatibleProvider
from convogate.providers.factory import ProviderCache, ProviderConfig


class TestProviderConfig:
    def test_from_camel_case_mapping(self) -> None:
        config = ProviderConfig.from_mapping(
            {"provider": "DeepSeek", "apiKey": "sk-1", "baseUrl": "https://x", "model": "m", "delay": 0}
        )
        assert config.provider == "deepseek"
        assert config.api_key == "sk-1"
        assert config.base_url == "https://x"
        assert config.extra == {"delay": 0}

    def test_provider_required(self) -> None:
        with pytest.raises(ConfigError):
            ProviderConfig.from_mapping({"model": "m"})

    def test_cache_key_stable(self) -> None:
        a = ProviderConfig(provider="local", model="m", extra={"x": 1, "y": 2})
        b = ProviderConfig(provider="local", model="m", extra={"y": 2, "x": 1})
        c = ProviderConfig(provider="local", model="other")
        assert a.cache_key() == b.cache_key()
        assert a.cache_key() != c.cache_key()


class TestProviderCache:
    def test_reuses_adapter_for_equal_config(self) -> None:
        cache = ProviderCache()
        first = cache.get(ProviderConfig(provider="local", model="m"))
        second = cache.get(ProviderConfig(provider="local", model="m"))
        assert first is second
        assert isinstance(first, LocalProvider)
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 0.5

    def test_unknown_provider(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            ProviderCache().get(ProviderConfig(provider="nope"))
        assert "nope" in str(exc_info.value)

    def test_lru_eviction(self) -> None:
        cache = ProviderCache(max_size=2)
        a = ProviderConfig(provider="local", model="a")
        b = ProviderConfig(provider="local", model="b")
        c = ProviderConfig(provider="local", model="c")
        adapter_a = cache.get(a)
        cache.get(b)
        cache.get(a)  # a becomes most recent
        cache.get(c)  # evicts b
        assert len(cache) == 2
        assert cache.stats.evictions == 1
        assert cache.get(a) is adapter_a

    def test_invalidate(self) -> None:
        cache = ProviderCache()
        a = ProviderConfig(provider="local", model="a")
        first = cache.get(a)
        cache.get(ProviderConfig(provider="local", model="b"))

        assert cache.invalidate(a) == 1
        assert cache.invalidate(a) == 0
        assert cache.get(a) is not first
        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_register_custom_factory(self) -> None:
        cache = ProviderCache()
        cache.register("Echo", lambda config: LocalProvider(default_model="echo-" + config.model))
        adapter = cache.get(ProviderConfig(provider="echo", model="x"))
        assert adapter.default_model == "echo-x"

    def test_ollama_needs_no_key(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        adapter = ProviderCache().get(ProviderConfig(provider="ollama"))
        assert isinstance(adapter, OpenAICompatibleProvider)
        assert adapter.name == "ollama"
        assert adapter.base_url == "http://localhost:11434/v1"

    def test_deepseek_default_endpoint(self) -> None:
        adapter = ProviderCache().get(ProviderConfig(provider="deepseek", api_key="sk-test"))
        assert adapter.base_url == "https://api.deepseek.com/v1"
        assert adapter.default_model == "deepseek-chat"

    def test_qianfan_default_endpoint(self) -> None:
        adapter = ProviderCache().get(ProviderConfig(provider="qianfan", api_key="bce-test"))
        assert adapter.name == "qianfan"
        assert adapter.base_url == "https://qianfan.baidubce.com/v2"
