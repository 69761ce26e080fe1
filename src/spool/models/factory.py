"""Provider construction from configuration."""

from __future__ import annotations

from spool.config import Config, ConfigError, ModelConfig
from spool.models.anthropic_provider import AnthropicProvider
from spool.models.base import ModelProvider
from spool.models.openai_provider import OpenAICompatibleProvider

_PROVIDERS = {
    "openai_compatible": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
}


def create_provider(name: str, model_config: ModelConfig) -> ModelProvider:
    """Instantiate the provider class named by ``model_config.provider``."""
    provider_cls = _PROVIDERS.get(model_config.provider)
    if provider_cls is None:
        known = ", ".join(sorted(_PROVIDERS))
        raise ConfigError(
            f"Unknown provider {model_config.provider!r} for model {name!r} "
            f"(expected one of: {known})"
        )
    return provider_cls(model_config, provider_name=name)


def create_providers(config: Config) -> dict[str, ModelProvider]:
    """Build every provider declared under ``[models.*]``."""
    return {
        name: create_provider(name, model_config)
        for name, model_config in config.models.items()
    }
