"""Topic keywords and journal recommendations for graded manuscripts.

A journal is recommended when the manuscript's grading score reaches the
journal's lower bound scaled by how well the manuscript's topics match it:
the main keyword weighs MAIN_KEYWORD_WEIGHT, each peripheral keyword
PERIPHERAL_KEYWORD_WEIGHT, and each weight multiplies the journal's score
for that topic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from doctools.ai.json_parser import parse_json_object

MAX_RECOMMENDATIONS = 12
MAIN_KEYWORD_WEIGHT = 2
PERIPHERAL_KEYWORD_WEIGHT = 1
KEYWORD_EXCERPT_CHARS = 10000
KEYWORDS_PLACEHOLDER = "{{KEYWORDS}}"

# (minimum match score, multiplier on the journal's lower bound); below the last rule a journal is skipped.
MATCH_SCORE_RULES: tuple[tuple[int, float], ...] = ((6, 0.90), (5, 0.95), (4, 1.00), (3, 1.05))

KEYWORD_SELECTION_PROMPT = """You analyze an academic manuscript to identify its primary and secondary research focuses. Choose from the following keywords only:
{{KEYWORDS}}

Output valid JSON with a single "main_keyword" (string) and up to three distinct items in "peripheral_keywords" (array). Peripheral keywords must differ from the main keyword. If none apply beyond the main topic, return an empty array for peripherals."""


@dataclass(frozen=True)
class JournalEntry:
  name: str
  low_bound: float
  reference_mark: str | None = None
  # Lower-cased topic name -> the journal's score for that topic.
  topic_scores: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class JournalCatalog:
  topics: tuple[str, ...] = ()
  journals: tuple[JournalEntry, ...] = ()


@dataclass(frozen=True)
class KeywordSummary:
  main: str | None = None
  peripheral: tuple[str, ...] = ()


def keyword_prompt(template: str, topics: tuple[str, ...]) -> str:
  return template.replace(KEYWORDS_PLACEHOLDER, ", ".join(topics))


def keyword_excerpt(text: str) -> str:
  return f"Manuscript content (first {KEYWORD_EXCERPT_CHARS} characters):\n\n{text[:KEYWORD_EXCERPT_CHARS]}"


def parse_keyword_response(text: str) -> KeywordSummary:
  """Read `{main_keyword, peripheral_keywords}`; peripherals are de-duplicated case-insensitively."""
  payload = parse_json_object(text)
  raw_main = payload.get("main_keyword")
  main = raw_main.strip() if isinstance(raw_main, str) and raw_main.strip() else None
  raw_peripheral = payload.get("peripheral_keywords")
  seen = {main.lower()} if main else set()
  peripheral: list[str] = []
  for keyword in raw_peripheral if isinstance(raw_peripheral, list) else []:
    if not isinstance(keyword, str) or not keyword.strip():
      continue
    trimmed = keyword.strip()
    if trimmed.lower() in seen:
      continue
    seen.add(trimmed.lower())
    peripheral.append(trimmed)
  return KeywordSummary(main=main, peripheral=tuple(peripheral))


def topic_weights(summary: KeywordSummary) -> dict[str, int]:
  weights: dict[str, int] = {}
  if summary.main:
    weights[summary.main.lower()] = MAIN_KEYWORD_WEIGHT
  for keyword in summary.peripheral:
    weights.setdefault(keyword.lower(), PERIPHERAL_KEYWORD_WEIGHT)
  return weights


def adjust_lower_bound(low_bound: float, match_score: int) -> float | None:
  """Scale a journal's lower bound by topic match; None when the match is too weak."""
  for minimum, multiplier in MATCH_SCORE_RULES:
    if match_score >= minimum:
      return low_bound * multiplier
  return None


def recommend_journals(catalog: JournalCatalog, summary: KeywordSummary, score: float) -> list[dict[str, Any]]:
  """Journals whose adjusted threshold the score reaches, highest thresholds kept."""
  weights = topic_weights(summary)
  recommendations: list[dict[str, Any]] = []
  for journal in catalog.journals:
    match_score = sum(weights.get(topic, 0) * journal_score for topic, journal_score in journal.topic_scores.items())
    adjusted = adjust_lower_bound(journal.low_bound, match_score)
    if adjusted is None or score < adjusted:
      continue
    recommendations.append({"journal_name": journal.name, "reference_mark": journal.reference_mark, "low_bound": journal.low_bound, "adjusted_threshold": adjusted, "match_score": match_score})
  recommendations.sort(key=lambda entry: entry["adjusted_threshold"])
  return recommendations[-MAX_RECOMMENDATIONS:]
