"""Minimal `.env` support for local runs; real deployments set the environment directly."""

from __future__ import annotations

import os
import re
from pathlib import Path

_ENV_LINE = re.compile(r"^\s*(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*?)\s*$")


def default_env_path() -> Path:
  """`.env` next to the project root, overridable with DOCTOOLS_ENV_FILE."""
  override = os.getenv("DOCTOOLS_ENV_FILE")
  if override:
    return Path(override)
  return Path(__file__).resolve().parents[2] / ".env"


def parse_env_line(line: str) -> tuple[str, str] | None:
  """Parse `KEY=value`; comments, blanks, and malformed lines yield None."""
  if not line.strip() or line.lstrip().startswith("#"):
    return None
  match = _ENV_LINE.match(line)
  if match is None:
    return None
  value = match.group("value")
  if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
    value = value[1:-1]
  return match.group("key"), value


def load_env_file(path: Path, *, override: bool = False) -> list[str]:
  """Export the file's pairs into os.environ and return the keys that were set."""
  if not path.is_file():
    return []
  loaded: list[str] = []
  for line in path.read_text(encoding="utf-8").splitlines():
    parsed = parse_env_line(line)
    if parsed is None:
      continue
    key, value = parsed
    if key in os.environ and not override:
      continue
    os.environ[key] = value
    loaded.append(key)
  return loaded
