import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.api.deps import get_runtime
from doctools.api.models import JobCreateResponse, JobStatusResponse, JobSubmitRequest
from doctools.core.database import get_db
from doctools.core.lifespan import Runtime
from doctools.core.security import CurrentUser, get_current_active_user
from doctools.services import jobs as job_service

router = APIRouter()
logger = logging.getLogger("doctools.api.routes.jobs")


@router.post("/{module}/jobs", response_model=JobCreateResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_job(  # noqa: B008
  module: str,
  request: JobSubmitRequest,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_active_user),  # noqa: B008
  db_session: AsyncSession = Depends(get_db),  # noqa: B008
) -> JobCreateResponse:
  """Admit a submission and start processing it in the background."""
  job = await job_service.submit_job(db_session, registry=runtime.registry, repo_factory=runtime.repo_factory, user=current_user, module_key=module, payload=request.payload)
  # Dispatch only after the admission transaction has committed.
  runtime.dispatcher.dispatch(module, job.job_id)
  return JobCreateResponse(job_id=job.job_id, module=module, status=job.status, status_url=f"/api/{module}/jobs/{job.job_id}")


@router.get("/{module}/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(  # noqa: B008
  module: str,
  job_id: str,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_active_user),  # noqa: B008
) -> JobStatusResponse:
  """Fetch the status, items and result of a job."""
  runtime.registry.resolve(module)
  view = await job_service.get_status(repo=runtime.repo_factory(module), job_id=job_id, requester=current_user)
  return JobStatusResponse.from_records(view.job, view.items)


@router.get("/{module}/jobs/{job_id}/download")
async def download_result(  # noqa: B008
  module: str,
  job_id: str,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_active_user),  # noqa: B008
) -> FileResponse:
  """Download a completed job's aggregate artifact."""
  runtime.registry.resolve(module)
  path = await job_service.resolve_download(repo=runtime.repo_factory(module), artifacts=runtime.artifacts, job_id=job_id, requester=current_user)
  return FileResponse(path, filename=path.name)


@router.get("/{module}/jobs/{job_id}/items/{round_number}/{ordinal}/download")
async def download_item(  # noqa: B008
  module: str,
  job_id: str,
  round_number: int,
  ordinal: int,
  runtime: Runtime = Depends(get_runtime),  # noqa: B008
  current_user: CurrentUser = Depends(get_current_active_user),  # noqa: B008
) -> FileResponse:
  """Download one item's artifact."""
  runtime.registry.resolve(module)
  path = await job_service.resolve_download(repo=runtime.repo_factory(module), artifacts=runtime.artifacts, job_id=job_id, requester=current_user, round_number=round_number, ordinal=ordinal)
  return FileResponse(path, filename=path.name)
