"""Admin-editable model and prompt selections per module."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.jobs.registry import ModuleHandler, ModuleSettings
from doctools.schema.module_configs import ModuleConfig
from doctools.services.reference_data import load_reference_data

logger = logging.getLogger(__name__)


def merge_settings(handler: ModuleHandler, models: dict[str, Any] | None, prompts: dict[str, Any] | None) -> ModuleSettings:
  """Overlay stored values on the handler defaults; blank values fall back."""
  merged_models = dict(handler.default_models)
  for key, value in (models or {}).items():
    if value not in (None, "", []):
      merged_models[key] = value
  merged_prompts = dict(handler.default_prompts)
  for key, value in (prompts or {}).items():
    if isinstance(value, str) and value.strip():
      merged_prompts[key] = value
  return ModuleSettings(models=merged_models, prompts=merged_prompts)


async def load_module_settings(session: AsyncSession, handler: ModuleHandler) -> ModuleSettings:
  row = await session.get(ModuleConfig, handler.key)
  if row is None:
    return merge_settings(handler, None, None)
  return merge_settings(handler, row.models, row.prompts)


async def load_job_settings(session: AsyncSession, handler: ModuleHandler) -> ModuleSettings:
  """Module settings plus the shared reference sets the handler declares."""
  settings = await load_module_settings(session, handler)
  reference = await load_reference_data(session, getattr(handler, "reference_data", ()))
  return replace(settings, reference=reference)


async def save_module_settings(session: AsyncSession, *, module_key: str, models: dict[str, Any], prompts: dict[str, str]) -> None:
  """Upsert a module's stored configuration; the caller commits."""
  stmt = pg_insert(ModuleConfig).values(module_name=module_key, models=models, prompts=prompts)
  stmt = stmt.on_conflict_do_update(index_elements=[ModuleConfig.module_name], set_={"models": stmt.excluded.models, "prompts": stmt.excluded.prompts, "updated_at": func.now()})
  await session.execute(stmt)


def make_settings_loader(session_factory):  # type: ignore[no-untyped-def]
  """Build the worker's settings callback; config and reference data are read once per job."""

  async def _load(handler: ModuleHandler) -> ModuleSettings:
    async with session_factory() as session:
      return await load_job_settings(session, handler)

  return _load
