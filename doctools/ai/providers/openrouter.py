"""OpenRouter provider implementation using openai SDK."""

from __future__ import annotations

from openai import AsyncOpenAI

from doctools.ai.providers.openai_compat import OpenAICompatibleProvider
from doctools.config import Settings


class OpenRouterProvider(OpenAICompatibleProvider):
  """OpenRouter gateway; supports image, PDF, and audio attachments."""

  def __init__(self, settings: Settings, *, client: AsyncOpenAI | None = None) -> None:
    if client is None:
      if not settings.openrouter_api_key:
        raise ValueError("OPENROUTER_API_KEY environment variable is required")
      # Retries happen per item in the worker.
      default_headers = {}
      if settings.openrouter_referer:
        default_headers["HTTP-Referer"] = settings.openrouter_referer
      if settings.openrouter_title:
        default_headers["X-Title"] = settings.openrouter_title
      client = AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=settings.openrouter_base_url, default_headers=default_headers or None, timeout=settings.llm_timeout_seconds, max_retries=0)
    super().__init__(name="openrouter", client=client)
