"""Glossary handling shared by the translation modules.

Terms come from the shared `glossary_terms` table and from the job payload;
payload entries win when both define the same source term.
"""

from __future__ import annotations

from typing import Any

from doctools.core.errors import ValidationFailedError

GLOSSARY_PLACEHOLDER = "{{GLOSSARY}}"
MAX_GLOSSARY_TERMS = 500


def normalize_glossary(raw: Any) -> list[dict[str, str]]:
  """Validate `[{"source": ..., "target": ...}]` glossary entries; blank rows are dropped."""
  if raw in (None, ""):
    return []
  if not isinstance(raw, list):
    raise ValidationFailedError("Glossary must be a list of {source, target} entries")
  if len(raw) > MAX_GLOSSARY_TERMS:
    raise ValidationFailedError(f"Glossary may contain at most {MAX_GLOSSARY_TERMS} terms")
  terms: list[dict[str, str]] = []
  for entry in raw:
    if not isinstance(entry, dict):
      raise ValidationFailedError("Glossary entries must be objects")
    source = str(entry.get("source") or "").strip()
    target = str(entry.get("target") or "").strip()
    if not source and not target:
      continue
    if not source or not target:
      raise ValidationFailedError("Glossary entries need both source and target terms")
    terms.append({"source": source, "target": target})
  return terms


def merge_glossaries(shared: list[dict[str, str]], overrides: list[dict[str, str]]) -> list[dict[str, str]]:
  """Shared terms in order, with per-job entries replacing any shared term of the same source (case-insensitive)."""
  merged: dict[str, dict[str, str]] = {}
  for term in [*shared, *overrides]:
    merged[term["source"].lower()] = term
  return list(merged.values())


def render_glossary(terms: list[dict[str, str]], *, reverse: bool = False, empty: str = "- (no glossary terms configured)") -> str:
  if not terms:
    return empty
  if reverse:
    return "\n".join(f"- CN: {term['target']} -> EN: {term['source']}" for term in terms)
  return "\n".join(f"- EN: {term['source']} -> CN: {term['target']}" for term in terms)


def apply_glossary(template: str, glossary_block: str) -> str:
  """Substitute the glossary placeholder, or append the block when the template has none."""
  if GLOSSARY_PLACEHOLDER in template:
    return template.replace(GLOSSARY_PLACEHOLDER, glossary_block)
  return f"{template.rstrip()}\n{glossary_block}"
