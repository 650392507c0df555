"""Lenient JSON parsing helpers for LLM outputs."""

from __future__ import annotations

import json
import re
from typing import Any

from doctools.core.errors import ParseError

_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def strip_json_fences(raw: str) -> str:
  """Remove a surrounding markdown code fence if the model added one."""
  stripped = raw.strip()
  match = _FENCE_RE.match(stripped)
  if match:
    return match.group(1)
  return stripped


def _extract_json_block(raw: str) -> str | None:
  """Return the outermost object/array substring, if any."""
  starts = [index for index in (raw.find("{"), raw.find("[")) if index != -1]
  if not starts:
    return None
  start = min(starts)
  closing = "}" if raw[start] == "{" else "]"
  end = raw.rfind(closing)
  if end <= start:
    return None
  return raw[start : end + 1]


def parse_json_with_fallback(raw: str) -> Any:
  """Parse JSON with minimal recovery to keep LLM retries low."""
  cleaned = strip_json_fences(raw)
  try:
    return json.loads(cleaned)
  except json.JSONDecodeError as exc:
    last_error = exc

  # Ignore leading or trailing chatter around the payload.
  candidate = _extract_json_block(cleaned)
  if candidate is None:
    raise ParseError(f"Model output is not JSON: {last_error}")

  for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
    try:
      return json.loads(attempt)
    except json.JSONDecodeError as exc:
      last_error = exc

  raise ParseError(f"Model output is not valid JSON: {last_error}")


def parse_json_object(raw: str) -> dict[str, Any]:
  """Parse model output that must be a JSON object."""
  parsed = parse_json_with_fallback(raw)
  if not isinstance(parsed, dict):
    raise ParseError(f"Expected a JSON object, got {type(parsed).__name__}")
  return parsed
