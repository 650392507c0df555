from __future__ import annotations

from types import SimpleNamespace

import pytest

from doctools.ai.client import RoutingLlmClient, split_model_name
from doctools.ai.json_parser import parse_json_object, parse_json_with_fallback, strip_json_fences
from doctools.ai.providers.base import AttachmentKind, ChatMessage, FileAttachment, LlmRequest, LlmResponse, Provider, TokenUsage, approximate_token_count
from doctools.ai.providers.openai_compat import audio_format_for, build_messages
from doctools.ai.providers.openrouter import OpenRouterProvider
from doctools.ai.providers.poe import PoeProvider
from doctools.core.errors import ParseError, ProviderError


class EchoProvider(Provider):
  name = "echo"

  def __init__(self) -> None:
    self.models: list[str] = []

  async def execute(self, model: str, request: LlmRequest) -> LlmResponse:
    self.models.append(model)
    return LlmResponse(text=request.messages[-1].text, token_usage=TokenUsage(total_tokens=3), provider=self.name, model=model)


def test_split_model_name_keeps_nested_model_path() -> None:
  assert split_model_name("OpenRouter/anthropic/claude-3-haiku") == ("openrouter", "anthropic/claude-3-haiku")
  with pytest.raises(ProviderError):
    split_model_name("gpt-4o")


@pytest.mark.anyio
async def test_routing_client_dispatches_by_prefix() -> None:
  provider = EchoProvider()
  client = RoutingLlmClient({"openrouter": provider})
  response = await client.execute(LlmRequest(model="openrouter/openai/gpt-4o-mini", messages=[ChatMessage(role="user", text="hello")]))
  assert response.text == "hello"
  assert provider.models == ["openai/gpt-4o-mini"]


@pytest.mark.anyio
async def test_routing_client_rejects_unconfigured_provider() -> None:
  client = RoutingLlmClient({})
  with pytest.raises(ProviderError):
    await client.execute(LlmRequest(model="poe/Claude-3.5-Sonnet", messages=[ChatMessage(role="user", text="hi")]))


def test_build_messages_appends_attachments_to_last_user_message() -> None:
  request = LlmRequest(
    model="openrouter/x",
    messages=[ChatMessage(role="system", text="sys"), ChatMessage(role="user", text="describe")],
    attachments=[FileAttachment(filename="fig.png", content_type="image/png", kind=AttachmentKind.IMAGE, data=b"\x89PNG")],
  )
  messages = build_messages(request)
  assert messages[0] == {"role": "system", "content": "sys"}
  parts = messages[1]["content"]
  assert parts[0] == {"type": "text", "text": "describe"}
  assert parts[1]["type"] == "image_url"
  assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_build_messages_without_attachments_is_plain_chat() -> None:
  request = LlmRequest(model="openrouter/x", messages=[ChatMessage(role="user", text="hi")])
  assert build_messages(request) == [{"role": "user", "content": "hi"}]


def test_audio_format_mapping() -> None:
  assert audio_format_for("audio/mpeg") == "mp3"
  assert audio_format_for("audio/x-m4a; codecs=aac") == "m4a"


def test_approximate_token_count() -> None:
  assert approximate_token_count("  ") == 0
  assert approximate_token_count("three short words") == 3


def test_json_parser_recovers_common_model_output() -> None:
  assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
  assert parse_json_with_fallback('Here you go: {"a": [1, 2,],} thanks') == {"a": [1, 2]}
  assert parse_json_object('{"title": "x"}') == {"title": "x"}


def test_json_parser_rejects_non_objects() -> None:
  with pytest.raises(ParseError):
    parse_json_object("[1, 2]")
  with pytest.raises(ParseError):
    parse_json_with_fallback("no json here")


def _provider_settings() -> SimpleNamespace:
  return SimpleNamespace(openrouter_api_key="or-key", openrouter_base_url="https://openrouter.test/v1", openrouter_referer="https://doctools.test", openrouter_title="Doc tools", poe_api_key="poe-key", poe_base_url="https://poe.test/v1", llm_timeout_seconds=30.0)


@pytest.mark.parametrize("provider_cls", [OpenRouterProvider, PoeProvider])
def test_gateway_clients_leave_retries_to_the_worker(provider_cls) -> None:  # type: ignore[no-untyped-def]
  provider = provider_cls(_provider_settings())
  assert provider._client.max_retries == 0
  assert provider._client.timeout == 30.0


def test_gateway_requires_api_key() -> None:
  settings = _provider_settings()
  settings.poe_api_key = None
  with pytest.raises(ValueError, match="POE_API_KEY"):
    PoeProvider(settings)  # type: ignore[arg-type]
