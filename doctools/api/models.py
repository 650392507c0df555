from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator

from doctools.jobs.models import JobItemRecord, JobRecord, JobStatus
from doctools.services.history import HistoryEntry
from doctools.services.quotas import parse_optional_limit


class JobSubmitRequest(BaseModel):
  """Module-specific submission payload; validated by the module handler."""

  payload: dict[str, Any] = Field(description="Documents and options for the selected module.")
  model_config = ConfigDict(extra="forbid")


class JobCreateResponse(BaseModel):
  job_id: StrictStr
  module: StrictStr
  status: JobStatus
  status_url: StrictStr


class JobItemResponse(BaseModel):
  round: int
  ordinal: int
  label: StrictStr
  status: JobStatus
  status_detail: StrictStr | None = None
  attempt_count: int = 0
  error_message: StrictStr | None = None
  tokens_used: int = 0
  download_url: StrictStr | None = None

  @classmethod
  def from_record(cls, item: JobItemRecord, *, base_url: str, files_purged: bool) -> JobItemResponse:
    download_url = None
    if item.output_path and not files_purged:
      download_url = f"{base_url}/items/{item.round}/{item.ordinal}/download"
    return cls(round=item.round, ordinal=item.ordinal, label=item.label, status=item.status, status_detail=item.status_detail, attempt_count=item.attempt_count, error_message=item.error_message, tokens_used=item.tokens_used, download_url=download_url)


class JobStatusResponse(BaseModel):
  """Status payload for a document-tool job."""

  job_id: StrictStr
  module: StrictStr
  status: JobStatus
  status_detail: StrictStr | None = None
  error_message: StrictStr | None = None
  usage_delta: int = 0
  total_tokens: int = 0
  result: dict[str, Any] | None = None
  download_url: StrictStr | None = None
  files_purged: bool = False
  created_at: datetime.datetime
  updated_at: datetime.datetime
  completed_at: datetime.datetime | None = None
  items: list[JobItemResponse] = Field(default_factory=list)

  @classmethod
  def from_records(cls, job: JobRecord, items: list[JobItemRecord]) -> JobStatusResponse:
    base_url = f"/api/{job.module_key}/jobs/{job.job_id}"
    download_url = f"{base_url}/download" if job.result_path and not job.files_purged else None
    return cls(
      job_id=job.job_id,
      module=job.module_key,
      status=job.status,
      status_detail=job.status_detail,
      error_message=job.error_message,
      usage_delta=job.usage_delta,
      total_tokens=job.total_tokens,
      result=job.result,
      download_url=download_url,
      files_purged=job.files_purged,
      created_at=job.created_at,
      updated_at=job.updated_at,
      completed_at=job.completed_at,
      items=[JobItemResponse.from_record(item, base_url=base_url, files_purged=job.files_purged) for item in items],
    )


class HistoryEntryResponse(BaseModel):
  module: StrictStr
  job_id: StrictStr
  created_at: datetime.datetime
  status: StrictStr | None = None
  status_detail: StrictStr | None = None
  updated_at: datetime.datetime | None = None
  files_purged: bool = False
  status_url: StrictStr

  @classmethod
  def from_entry(cls, entry: HistoryEntry) -> HistoryEntryResponse:
    return cls(
      module=entry.module,
      job_id=entry.job_key,
      created_at=entry.created_at,
      status=entry.status,
      status_detail=entry.status_detail,
      updated_at=entry.updated_at,
      files_purged=entry.files_purged,
      status_url=f"/api/{entry.module}/jobs/{entry.job_key}",
    )


class HistoryResponse(BaseModel):
  entries: list[HistoryEntryResponse]


class ModuleInfo(BaseModel):
  key: StrictStr
  title: StrictStr
  attempt_cap: int
  concurrency_cap: int
  units_per_item: int
  units_per_job: int


class ModuleUsage(BaseModel):
  tokens: int = 0
  units: int = 0


class UserUsageResponse(BaseModel):
  user_id: uuid.UUID
  username: StrictStr
  usage_group_id: uuid.UUID | None = None
  modules: dict[str, ModuleUsage] = Field(default_factory=dict)


class UsageReportResponse(BaseModel):
  window_days: int
  users: list[UserUsageResponse]


class ModuleLimitRequest(BaseModel):
  unit_limit: int | None = None
  window_days: int | None = None

  @field_validator("unit_limit", "window_days", mode="before")
  @classmethod
  def parse_limit(cls, value: Any) -> int | None:
    # Admin forms send blanks for "unlimited".
    if value is None or isinstance(value, int):
      if isinstance(value, int) and value < 0:
        raise ValueError("Limits must be non-negative")
      return value
    return parse_optional_limit(str(value))


class GroupLimitsRequest(BaseModel):
  token_limit: int | None = None
  modules: dict[str, ModuleLimitRequest] = Field(default_factory=dict)
  model_config = ConfigDict(extra="forbid")

  @field_validator("token_limit", mode="before")
  @classmethod
  def parse_token_limit(cls, value: Any) -> int | None:
    if value is None or isinstance(value, int):
      if isinstance(value, int) and value < 0:
        raise ValueError("Limits must be non-negative")
      return value
    return parse_optional_limit(str(value))


class GroupLimitsResponse(BaseModel):
  group_id: uuid.UUID
  token_limit: int | None = None
  modules: dict[str, ModuleLimitRequest] = Field(default_factory=dict)


class ModuleConfigRequest(BaseModel):
  models: dict[str, Any] = Field(default_factory=dict)
  prompts: dict[str, str] = Field(default_factory=dict)
  model_config = ConfigDict(extra="forbid")


class ModuleConfigResponse(BaseModel):
  module: StrictStr
  models: dict[str, Any]
  prompts: dict[str, str]


class GlossaryTermModel(BaseModel):
  source: StrictStr
  target: StrictStr


class GlossaryRequest(BaseModel):
  terms: list[GlossaryTermModel] = Field(default_factory=list)
  model_config = ConfigDict(extra="forbid")


class GlossaryResponse(BaseModel):
  terms: list[GlossaryTermModel]


class JournalTopicModel(BaseModel):
  name: StrictStr
  description: StrictStr | None = None


class JournalModel(BaseModel):
  journal_name: StrictStr
  reference_mark: StrictStr | None = None
  low_bound: float = Field(ge=0)
  notes: StrictStr | None = None
  topic_scores: dict[str, int] = Field(default_factory=dict, description="Topic name -> journal score for that topic.")


class JournalCatalogRequest(BaseModel):
  topics: list[JournalTopicModel] = Field(default_factory=list)
  journals: list[JournalModel] = Field(default_factory=list)
  model_config = ConfigDict(extra="forbid")


class JournalCatalogResponse(BaseModel):
  topics: list[StrictStr]
  journals: list[JournalModel]
