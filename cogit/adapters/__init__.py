"""
cogit.adapters — Embedding / completion provider registry.

Provides a ``create_adapter()`` factory that returns the correct adapter
for ``RepositoryConfig.provider`` (or the ``COGIT_PROVIDER`` environment
variable).

Supported providers:
    - ``openai``  — text-embedding-3-small + gpt-4o-mini (needs OPENAI_API_KEY)
    - ``ollama``  — nomic-embed-text + qwen2.5-coder:7b (local, no key)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from cogit.adapters.base import BaseAdapter
from cogit.core.errors import ServiceUnconfiguredError

if TYPE_CHECKING:
    from cogit.core.models import CogitConfig


PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "openai": {
        "embedding_model": "text-embedding-3-small",
        "completion_model": "gpt-4o-mini",
        "base_url": "https://api.openai.com",
        "env_key": "OPENAI_API_KEY",
    },
    "ollama": {
        "embedding_model": "nomic-embed-text",
        "completion_model": "qwen2.5-coder:7b",
        "base_url": "http://localhost:11434",
        "env_key": "",  # No API key needed for local models
    },
}


def create_adapter(
    provider: str,
    api_key: str = "",
    embedding_model: str = "",
    completion_model: str = "",
    base_url: str = "",
    timeout: float = 30.0,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseAdapter:
    """
    Factory function that returns the correct adapter for the given provider.

    Raises :class:`ServiceUnconfiguredError` for an unknown provider or when
    the provider needs a credential and none was supplied.
    """
    provider = provider.lower().strip()
    defaults = PROVIDER_DEFAULTS.get(provider)
    if defaults is None:
        raise ServiceUnconfiguredError(
            f"Unknown provider: '{provider}'. "
            f"Supported: {', '.join(PROVIDER_DEFAULTS)}"
        )
    if defaults["env_key"] and not api_key:
        raise ServiceUnconfiguredError(
            f"No API key for provider '{provider}'. Set {defaults['env_key']}."
        )

    kwargs = dict(
        api_key=api_key,
        embedding_model=embedding_model or defaults["embedding_model"],
        completion_model=completion_model or defaults["completion_model"],
        base_url=base_url or defaults["base_url"],
        timeout=timeout,
        max_retries=max_retries,
        retry_base_delay=retry_base_delay,
        transport=transport,
    )

    if provider == "openai":
        from cogit.adapters.openai import OpenAIAdapter

        return OpenAIAdapter(**kwargs)

    elif provider == "ollama":
        from cogit.adapters.ollama import OllamaAdapter

        return OllamaAdapter(**kwargs)

    raise ServiceUnconfiguredError(f"Unknown provider: '{provider}'")


def adapter_from_config(
    config: "CogitConfig",
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseAdapter:
    """Build the adapter described by a repository's resolved configuration."""
    s = config.settings
    return create_adapter(
        s.provider,
        api_key=config.api_key,
        embedding_model=s.embedding_model,
        completion_model=s.completion_model,
        base_url=s.base_url,
        timeout=s.request_timeout,
        max_retries=s.max_retries,
        retry_base_delay=s.retry_base_delay,
        transport=transport,
    )


__all__ = ["BaseAdapter", "create_adapter", "adapter_from_config", "PROVIDER_DEFAULTS"]
