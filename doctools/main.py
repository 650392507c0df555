from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from doctools.api.routes import admin, history, jobs
from doctools.config import get_settings
from doctools.core.errors import AdmissionError, JobForbiddenError, JobGoneError, JobNotFoundError, UnknownModuleError
from doctools.core.exceptions import admission_exception_handler, global_exception_handler, http_exception_handler, job_lookup_exception_handler, request_validation_exception_handler
from doctools.core.lifespan import lifespan
from doctools.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

VERSION = "0.1.0"

settings = get_settings()

app = FastAPI(title="doctools-engine", version=VERSION, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "PUT", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "content-disposition"])


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(AdmissionError, admission_exception_handler)
for lookup_error in (JobNotFoundError, JobForbiddenError, JobGoneError, UnknownModuleError):
  app.add_exception_handler(lookup_error, job_lookup_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": VERSION}


app.include_router(history.router, prefix="/api", tags=["history"])
app.include_router(jobs.router, prefix="/api", tags=["jobs"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])
