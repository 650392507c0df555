"""Base interfaces for LLM providers and their request/response types."""

from __future__ import annotations

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

ChatRole = Literal["system", "user", "assistant"]


class AttachmentKind(str, Enum):
  IMAGE = "image"
  AUDIO = "audio"
  PDF = "pdf"


@dataclass(frozen=True)
class ChatMessage:
  role: ChatRole
  text: str


@dataclass(frozen=True)
class FileAttachment:
  """Binary input forwarded alongside the last user message."""

  filename: str
  content_type: str
  kind: AttachmentKind
  data: bytes

  def base64_data(self) -> str:
    return base64.b64encode(self.data).decode("ascii")

  def data_url(self) -> str:
    return f"data:{self.content_type};base64,{self.base64_data()}"


@dataclass(frozen=True)
class LlmRequest:
  """A chat completion request addressed as `provider/model`."""

  model: str
  messages: list[ChatMessage]
  attachments: list[FileAttachment] = field(default_factory=list)


@dataclass(frozen=True)
class TokenUsage:
  prompt_tokens: int = 0
  response_tokens: int = 0
  total_tokens: int = 0


@dataclass(frozen=True)
class LlmResponse:
  text: str
  token_usage: TokenUsage
  provider: str
  model: str
  raw: dict[str, Any] | None = None


def approximate_token_count(text: str) -> int:
  """Whitespace word count used when a provider omits usage numbers."""
  if not text.strip():
    return 0
  return len(text.split())


class Provider(ABC):
  """Abstract base class for LLM providers."""

  name: str

  @abstractmethod
  async def execute(self, model: str, request: LlmRequest) -> LlmResponse:
    """Run a chat completion for a provider-local model name."""
