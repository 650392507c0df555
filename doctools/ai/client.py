"""Routing LLM client: dispatches `provider/model` names to configured providers."""

from __future__ import annotations

import logging
from typing import Protocol

from doctools.ai.providers.base import LlmRequest, LlmResponse, Provider
from doctools.config import Settings
from doctools.core.errors import ProviderError

logger = logging.getLogger(__name__)


class LlmClient(Protocol):
  """Black-box LLM capability used by the worker."""

  async def execute(self, request: LlmRequest) -> LlmResponse:
    """Run one request; raise ProviderError on failure."""


def split_model_name(model: str) -> tuple[str, str]:
  """Split `provider/model` into its parts; the model part may contain slashes."""
  provider, sep, name = model.strip().partition("/")
  if not sep or not provider or not name:
    raise ProviderError(f"Model '{model}' must be prefixed with a provider (e.g. openrouter/...)")
  return provider.lower(), name


class RoutingLlmClient:
  """LlmClient that resolves the provider from the model prefix."""

  def __init__(self, providers: dict[str, Provider]) -> None:
    self._providers = providers

  @property
  def provider_names(self) -> list[str]:
    return sorted(self._providers)

  async def execute(self, request: LlmRequest) -> LlmResponse:
    provider_name, model = split_model_name(request.model)
    provider = self._providers.get(provider_name)
    if provider is None:
      raise ProviderError(f"Provider '{provider_name}' is not configured", provider=provider_name, model=model)
    return await provider.execute(model, request)


def build_llm_client(settings: Settings) -> RoutingLlmClient:
  """Build a client with every provider whose API key is configured."""
  from doctools.ai.providers.openrouter import OpenRouterProvider
  from doctools.ai.providers.poe import PoeProvider

  providers: dict[str, Provider] = {}
  if settings.openrouter_api_key:
    providers["openrouter"] = OpenRouterProvider(settings)
  if settings.poe_api_key:
    providers["poe"] = PoeProvider(settings)
  if not providers:
    logger.warning("No LLM provider keys configured; every job will fail at its first call.")
  return RoutingLlmClient(providers)
