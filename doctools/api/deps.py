"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from doctools.core.lifespan import Runtime


def get_runtime(request: Request) -> Runtime:
  """Return the job engine built by the lifespan."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job engine is not running")
  return runtime
