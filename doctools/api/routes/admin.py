import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.api.deps import get_runtime
from doctools.api.models import (
  GlossaryRequest,
  GlossaryResponse,
  GlossaryTermModel,
  GroupLimitsRequest,
  GroupLimitsResponse,
  JournalCatalogRequest,
  JournalCatalogResponse,
  JournalModel,
  ModuleConfigRequest,
  ModuleConfigResponse,
  ModuleLimitRequest,
  ModuleUsage,
  UsageReportResponse,
  UserUsageResponse,
)
from doctools.core.database import get_db
from doctools.core.lifespan import Runtime
from doctools.core.security import CurrentUser, get_current_admin_user
from doctools.schema.usage import UsageGroup
from doctools.schema.users import User
from doctools.services.module_configs import load_module_settings, save_module_settings
from doctools.services.quotas import ModuleLimit, group_limits, upsert_group_limits
from doctools.services.reference_data import load_glossary, load_journal_catalog, replace_glossary, replace_journal_catalog
from doctools.services.usage import WINDOW_DAYS, usage_for_users

router = APIRouter()
logger = logging.getLogger("doctools.api.routes.admin")


@router.get("/usage", response_model=UsageReportResponse)
async def usage_report(  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> UsageReportResponse:
  """Per-user, per-module usage over the trailing window."""
  users = (await db_session.execute(select(User.id, User.username, User.usage_group_id).order_by(User.username))).all()
  totals = await usage_for_users(db_session, [user_id for user_id, _, _ in users])
  report = [
    UserUsageResponse(user_id=user_id, username=username, usage_group_id=group_id, modules={module: ModuleUsage(tokens=entry.tokens, units=entry.units) for module, entry in totals.get(user_id, {}).items()})
    for user_id, username, group_id in users
  ]
  return UsageReportResponse(window_days=WINDOW_DAYS, users=report)


@router.put("/usage-groups/{group_id}/limits", response_model=GroupLimitsResponse)
async def update_group_limits(  # noqa: B008
  group_id: uuid.UUID,
  request: GroupLimitsRequest,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> GroupLimitsResponse:
  """Replace a usage group's token limit and per-module unit caps."""
  unknown = [module for module in request.modules if module not in runtime.registry]
  if unknown:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown module(s): {', '.join(sorted(unknown))}")
  allocations = {module: ModuleLimit(unit_limit=limit.unit_limit, window_days=limit.window_days) for module, limit in request.modules.items()}
  try:
    await upsert_group_limits(db_session, group_id=group_id, token_limit=request.token_limit, allocations=allocations)
  except LookupError as exc:
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Usage group not found") from exc
  await db_session.commit()
  logger.info("Usage group limits updated group_id=%s by=%s modules=%s", group_id, current_user.username, sorted(allocations))

  group = await db_session.get(UsageGroup, group_id)
  stored = (await group_limits(db_session, [group_id])).get(group_id, {})
  return GroupLimitsResponse(
    group_id=group_id,
    token_limit=group.token_limit if group is not None else request.token_limit,
    modules={module: ModuleLimitRequest(unit_limit=limit.unit_limit, window_days=limit.window_days) for module, limit in stored.items()},
  )


@router.get("/modules/{module}/config", response_model=ModuleConfigResponse)
async def get_module_config(  # noqa: B008
  module: str,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> ModuleConfigResponse:
  """Effective models and prompts for a module (stored values over defaults)."""
  handler = runtime.registry.resolve(module)
  settings = await load_module_settings(db_session, handler)
  return ModuleConfigResponse(module=module, models=settings.models, prompts=settings.prompts)


@router.put("/modules/{module}/config", response_model=ModuleConfigResponse)
async def update_module_config(  # noqa: B008
  module: str,
  request: ModuleConfigRequest,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> ModuleConfigResponse:
  """Store model and prompt overrides; new jobs pick them up when they start."""
  handler = runtime.registry.resolve(module)
  unknown = sorted(set(request.models) - set(handler.default_models)) + sorted(set(request.prompts) - set(handler.default_prompts))
  if unknown:
    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown setting(s): {', '.join(unknown)}")
  await save_module_settings(db_session, module_key=module, models=request.models, prompts=request.prompts)
  await db_session.commit()
  logger.info("Module config updated module=%s by=%s", module, current_user.username)
  settings = await load_module_settings(db_session, handler)
  return ModuleConfigResponse(module=module, models=settings.models, prompts=settings.prompts)


@router.get("/glossary", response_model=GlossaryResponse)
async def get_glossary(  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> GlossaryResponse:
  """Shared glossary applied by the summarizer and DOCX translator."""
  terms = await load_glossary(db_session)
  return GlossaryResponse(terms=[GlossaryTermModel(**term) for term in terms])


@router.put("/glossary", response_model=GlossaryResponse)
async def update_glossary(  # noqa: B008
  request: GlossaryRequest,
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> GlossaryResponse:
  """Replace the shared glossary; running jobs keep the terms they started with."""
  terms = await replace_glossary(db_session, [term.model_dump() for term in request.terms])
  await db_session.commit()
  logger.info("Glossary replaced terms=%d by=%s", len(terms), current_user.username)
  return GlossaryResponse(terms=[GlossaryTermModel(**term) for term in terms])


@router.get("/journals", response_model=JournalCatalogResponse)
async def get_journal_catalog(  # noqa: B008
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> JournalCatalogResponse:
  """Topics and journal thresholds used for grader recommendations."""
  catalog = await load_journal_catalog(db_session)
  journals = [JournalModel(journal_name=entry.name, reference_mark=entry.reference_mark, low_bound=entry.low_bound, topic_scores=entry.topic_scores) for entry in catalog.journals]
  return JournalCatalogResponse(topics=list(catalog.topics), journals=journals)


@router.put("/journals", response_model=JournalCatalogResponse)
async def update_journal_catalog(  # noqa: B008
  request: JournalCatalogRequest,
  current_user: CurrentUser = Depends(get_current_admin_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> JournalCatalogResponse:
  """Replace the journal catalog in one transaction."""
  await replace_journal_catalog(db_session, topics=[topic.model_dump() for topic in request.topics], journals=[journal.model_dump() for journal in request.journals])
  await db_session.commit()
  logger.info("Journal catalog replaced by=%s", current_user.username)
  return await get_journal_catalog(current_user=current_user, db_session=db_session)
