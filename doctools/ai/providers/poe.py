"""Poe provider implementation using its OpenAI-compatible endpoint."""

from __future__ import annotations

from openai import AsyncOpenAI

from doctools.ai.providers.base import AttachmentKind, LlmRequest
from doctools.ai.providers.openai_compat import OpenAICompatibleProvider
from doctools.config import Settings
from doctools.core.errors import ProviderError


class PoeProvider(OpenAICompatibleProvider):
  """Poe gateway; audio input is ignored upstream so it is rejected here."""

  def __init__(self, settings: Settings, *, client: AsyncOpenAI | None = None) -> None:
    if client is None:
      if not settings.poe_api_key:
        raise ValueError("POE_API_KEY environment variable is required")
      client = AsyncOpenAI(api_key=settings.poe_api_key, base_url=settings.poe_base_url, timeout=settings.llm_timeout_seconds, max_retries=0)
    super().__init__(name="poe", client=client)

  def _validate(self, request: LlmRequest) -> None:
    if any(attachment.kind is AttachmentKind.AUDIO for attachment in request.attachments):
      raise ProviderError("Audio attachments are not supported by Poe", provider=self.name, model=request.model)
