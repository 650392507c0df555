"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_job_id() -> str:
  """Return a new job identifier."""
  return str(uuid.uuid4())


def is_uuid(value: str) -> bool:
  """Return True when the value parses as a UUID."""
  try:
    uuid.UUID(str(value))
  except ValueError:
    return False
  return True
