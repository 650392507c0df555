"""Shared glossary and journal catalog that module handlers read at job start."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.core.errors import ValidationFailedError
from doctools.modules.glossary import normalize_glossary
from doctools.modules.journals import JournalCatalog, JournalEntry
from doctools.schema.reference import GlossaryTerm, JournalReference, JournalTopic, JournalTopicScore

logger = logging.getLogger(__name__)


async def load_glossary(session: AsyncSession) -> list[dict[str, str]]:
  """Shared glossary terms ordered by source term."""
  rows = (await session.execute(select(GlossaryTerm.source_term, GlossaryTerm.target_term).order_by(GlossaryTerm.source_term))).all()
  return [{"source": source, "target": target} for source, target in rows]


async def replace_glossary(session: AsyncSession, raw_terms: Any) -> list[dict[str, str]]:
  """Swap the shared glossary for a new term list; the caller commits."""
  terms = normalize_glossary(raw_terms)
  seen: set[str] = set()
  for term in terms:
    key = term["source"].lower()
    if key in seen:
      raise ValidationFailedError(f"Duplicate glossary source term: {term['source']}")
    seen.add(key)
  await session.execute(delete(GlossaryTerm))
  session.add_all([GlossaryTerm(source_term=term["source"], target_term=term["target"]) for term in terms])
  await session.flush()
  return terms


async def load_journal_catalog(session: AsyncSession) -> JournalCatalog:
  """Topics, journals, and per-topic journal scores; scores for unknown topics are ignored."""
  topics = (await session.execute(select(JournalTopic.id, JournalTopic.name).order_by(JournalTopic.name))).all()
  references = (await session.execute(select(JournalReference).order_by(JournalReference.journal_name))).scalars().all()
  scores = (await session.execute(select(JournalTopicScore.journal_id, JournalTopicScore.topic_id, JournalTopicScore.score))).all()

  topic_names = {topic_id: name.lower() for topic_id, name in topics}
  by_journal: dict[uuid.UUID, dict[str, int]] = {}
  for journal_id, topic_id, score in scores:
    name = topic_names.get(topic_id)
    if name is not None:
      by_journal.setdefault(journal_id, {})[name] = int(score)
  journals = tuple(JournalEntry(name=row.journal_name, low_bound=float(row.low_bound), reference_mark=row.reference_mark, topic_scores=by_journal.get(row.id, {})) for row in references)
  return JournalCatalog(topics=tuple(name for _, name in topics), journals=journals)


async def replace_journal_catalog(session: AsyncSession, *, topics: list[dict[str, Any]], journals: list[dict[str, Any]]) -> None:
  """Swap the journal catalog; journal topic scores must name listed topics. The caller commits."""
  topic_ids: dict[str, uuid.UUID] = {}
  topic_rows: list[JournalTopic] = []
  for topic in topics:
    name = str(topic.get("name") or "").strip()
    if not name:
      raise ValidationFailedError("Journal topics need a name")
    if name.lower() in topic_ids:
      raise ValidationFailedError(f"Duplicate journal topic: {name}")
    topic_ids[name.lower()] = uuid.uuid4()
    topic_rows.append(JournalTopic(id=topic_ids[name.lower()], name=name, description=topic.get("description")))

  journal_rows: list[JournalReference] = []
  score_rows: list[JournalTopicScore] = []
  seen_journals: set[str] = set()
  for journal in journals:
    name = str(journal.get("journal_name") or "").strip()
    if not name or name.lower() in seen_journals:
      raise ValidationFailedError(f"Journal names must be present and unique: {name or '(blank)'}")
    seen_journals.add(name.lower())
    low_bound = float(journal.get("low_bound", 0.0))
    if low_bound < 0:
      raise ValidationFailedError(f"low_bound for {name} cannot be negative")
    row = JournalReference(id=uuid.uuid4(), journal_name=name, reference_mark=journal.get("reference_mark"), low_bound=low_bound, notes=journal.get("notes"))
    journal_rows.append(row)
    for topic_name, score in (journal.get("topic_scores") or {}).items():
      topic_id = topic_ids.get(str(topic_name).strip().lower())
      if topic_id is None:
        raise ValidationFailedError(f"Journal {name} scores unknown topic: {topic_name}")
      score_rows.append(JournalTopicScore(journal_id=row.id, topic_id=topic_id, score=int(score)))

  await session.execute(delete(JournalTopicScore))
  await session.execute(delete(JournalReference))
  await session.execute(delete(JournalTopic))
  session.add_all([*topic_rows, *journal_rows])
  await session.flush()
  session.add_all(score_rows)
  await session.flush()
  logger.info("Journal catalog replaced topics=%d journals=%d scores=%d", len(topic_rows), len(journal_rows), len(score_rows))


REFERENCE_LOADERS: dict[str, Callable[[AsyncSession], Awaitable[Any]]] = {"glossary": load_glossary, "journals": load_journal_catalog}


async def load_reference_data(session: AsyncSession, names: Iterable[str]) -> dict[str, Any]:
  """Load the named reference sets; unknown names are a programming error."""
  reference: dict[str, Any] = {}
  for name in names:
    loader = REFERENCE_LOADERS.get(name)
    if loader is None:
      raise KeyError(f"Unknown reference data set: {name}")
    reference[name] = await loader(session)
  return reference
