"""Shared chat-completions implementation for OpenAI-compatible gateways."""

from __future__ import annotations

import logging
from typing import Any

from openai import APIError, AsyncOpenAI

from doctools.ai.providers.base import AttachmentKind, FileAttachment, LlmRequest, LlmResponse, Provider, TokenUsage, approximate_token_count
from doctools.core.errors import ProviderError

logger = logging.getLogger(__name__)

_AUDIO_FORMATS = {
  "audio/mpeg": "mp3",
  "audio/mp3": "mp3",
  "audio/wav": "wav",
  "audio/x-wav": "wav",
  "audio/ogg": "ogg",
  "audio/flac": "flac",
  "audio/aac": "aac",
  "audio/mp4": "m4a",
  "audio/x-m4a": "m4a",
}


def audio_format_for(content_type: str) -> str:
  """Map an audio MIME type to the format name the API expects."""
  normalized = content_type.split(";", 1)[0].strip().lower()
  return _AUDIO_FORMATS.get(normalized, normalized.rsplit("/", 1)[-1] or "mp3")


def _attachment_part(attachment: FileAttachment) -> dict[str, Any]:
  if attachment.kind is AttachmentKind.IMAGE:
    return {"type": "image_url", "image_url": {"url": attachment.data_url()}}
  if attachment.kind is AttachmentKind.PDF:
    return {"type": "file", "file": {"filename": attachment.filename, "file_data": attachment.data_url()}}
  return {"type": "input_audio", "input_audio": {"data": attachment.base64_data(), "format": audio_format_for(attachment.content_type)}}


def build_messages(request: LlmRequest) -> list[dict[str, Any]]:
  """Convert a request into chat-completions messages.

  Attachments are appended as content parts of the last user message; a bare
  user message is added when the request has none.
  """
  messages: list[dict[str, Any]] = [{"role": message.role, "content": message.text} for message in request.messages]
  if not request.attachments:
    return messages

  target = next((index for index in range(len(messages) - 1, -1, -1) if messages[index]["role"] == "user"), None)
  if target is None:
    messages.append({"role": "user", "content": []})
    target = len(messages) - 1

  text = messages[target]["content"]
  parts: list[dict[str, Any]] = [{"type": "text", "text": text}] if isinstance(text, str) and text else []
  parts.extend(_attachment_part(attachment) for attachment in request.attachments)
  messages[target] = {"role": "user", "content": parts}
  return messages


class OpenAICompatibleProvider(Provider):
  """Provider backed by an `AsyncOpenAI` client pointed at a compatible base URL."""

  def __init__(self, *, name: str, client: AsyncOpenAI) -> None:
    self.name = name
    self._client = client

  def _validate(self, request: LlmRequest) -> None:
    """Hook for providers that reject some attachment kinds."""

  async def execute(self, model: str, request: LlmRequest) -> LlmResponse:
    self._validate(request)
    messages = build_messages(request)
    try:
      response = await self._client.chat.completions.create(model=model, messages=messages)
    except APIError as exc:
      raise ProviderError(f"{self.name} call failed: {exc}", provider=self.name, model=model) from exc

    if not response.choices:
      raise ProviderError(f"{self.name} returned no choices", provider=self.name, model=model)
    text = response.choices[0].message.content or ""
    if not text.strip():
      raise ProviderError(f"{self.name} returned an empty response", provider=self.name, model=model)

    # Fall back to word-count estimates when the gateway omits usage.
    prompt_tokens = 0
    response_tokens = 0
    if response.usage:
      prompt_tokens = int(response.usage.prompt_tokens or 0)
      response_tokens = int(response.usage.completion_tokens or 0)
    if prompt_tokens == 0:
      prompt_tokens = approximate_token_count("\n".join(message.text for message in request.messages))
    if response_tokens == 0:
      response_tokens = approximate_token_count(text)
    usage = TokenUsage(prompt_tokens=prompt_tokens, response_tokens=response_tokens, total_tokens=prompt_tokens + response_tokens)

    logger.debug("%s response model=%s tokens=%d", self.name, model, usage.total_tokens)
    return LlmResponse(text=text, token_usage=usage, provider=self.name, model=model, raw=response.model_dump())
