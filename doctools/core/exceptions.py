import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from doctools.core.errors import AdmissionError, JobForbiddenError, JobGoneError, JobNotFoundError, QuotaExceededError, UnknownModuleError, UsageBackendError, ValidationFailedError


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    # Remove nested input values from context payloads as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


def _request_id(request: Request) -> str | None:
  return getattr(request.state, "request_id", None)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = _request_id(request)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = _request_id(request)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from doctools.config import get_settings

  settings = get_settings()
  request_id = _request_id(request)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id), headers=exc.headers)


def _admission_status(exc: AdmissionError) -> int:
  if isinstance(exc, QuotaExceededError):
    return status.HTTP_429_TOO_MANY_REQUESTS
  if isinstance(exc, ValidationFailedError):
    return status.HTTP_422_UNPROCESSABLE_ENTITY
  if isinstance(exc, UsageBackendError):
    return status.HTTP_503_SERVICE_UNAVAILABLE
  return status.HTTP_400_BAD_REQUEST


async def admission_exception_handler(request: Request, exc: AdmissionError) -> JSONResponse:
  """Translate refused submissions into 429/422 responses."""
  request_id = _request_id(request)
  status_code = _admission_status(exc)
  logger = logging.getLogger("uvicorn.error")
  # Backend failures hide their detail; quota and validation reasons are client-facing.
  if status_code >= 500:
    logger.error("Admission backend failure request_id=%s path=%s error=%s", request_id, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=_error_payload("Usage accounting unavailable", request_id=request_id))
  logger.info("Submission refused request_id=%s path=%s status_code=%s reason=%s", request_id, request.url.path, status_code, exc)
  return JSONResponse(status_code=status_code, content=_error_payload(str(exc), request_id=request_id))


async def job_lookup_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Map job lookup failures to 404/403/410."""
  request_id = _request_id(request)
  if isinstance(exc, JobGoneError):
    status_code = status.HTTP_410_GONE
    detail = "Job outputs have been purged"
  elif isinstance(exc, JobForbiddenError):
    status_code = status.HTTP_403_FORBIDDEN
    detail = "Not allowed to access this job"
  elif isinstance(exc, UnknownModuleError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Unknown module"
  elif isinstance(exc, JobNotFoundError):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Job not found"
  else:
    return await global_exception_handler(request, exc)
  return JSONResponse(status_code=status_code, content=_error_payload(detail, request_id=request_id))
