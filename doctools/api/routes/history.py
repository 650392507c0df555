import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.api.deps import get_runtime
from doctools.api.models import HistoryEntryResponse, HistoryResponse, ModuleInfo
from doctools.config import Settings, get_settings
from doctools.core.database import get_db
from doctools.core.lifespan import Runtime
from doctools.core.security import CurrentUser, get_current_active_user
from doctools.services import jobs as job_service

router = APIRouter()
logger = logging.getLogger("doctools.api.routes.history")


@router.get("/history", response_model=HistoryResponse)
async def list_history(  # noqa: B008
  module: str | None = Query(default=None),  # noqa: B008
  limit: int = Query(default=20),  # noqa: B008
  settings: Settings = Depends(get_settings),  # noqa: B008
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_active_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> HistoryResponse:
  """Recent jobs for the caller across modules."""
  entries = await job_service.list_history(db_session, registry=runtime.registry, user=current_user, module=module, limit=limit, retention_hours=settings.retention_hours)
  return HistoryResponse(entries=[HistoryEntryResponse.from_entry(entry) for entry in entries])


@router.get("/modules", response_model=list[ModuleInfo], dependencies=[Depends(get_current_active_user)])
async def list_modules(runtime: Runtime = Depends(get_runtime)) -> list[ModuleInfo]:  # noqa: B008
  """Registered tool modules and their failure policy."""
  return [
    ModuleInfo(key=handler.key, title=handler.title, attempt_cap=handler.policy.attempt_cap, concurrency_cap=handler.policy.concurrency_cap, units_per_item=handler.policy.units_per_item, units_per_job=handler.policy.units_per_job)
    for handler in runtime.registry.handlers()
  ]
