import logging
import re
import time
import uuid
from typing import Any

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger("doctools.core.middleware")

REQUEST_ID_HEADER = "x-request-id"
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{8,64}$")
SLOW_REQUEST_MS = 2000.0


def resolve_request_id(scope: Scope) -> str:
  """Reuse a well-formed upstream request id, otherwise mint one."""
  incoming = Headers(scope=scope).get(REQUEST_ID_HEADER)
  if incoming and _REQUEST_ID_PATTERN.match(incoming):
    return incoming
  return uuid.uuid4().hex


class RequestLoggingMiddleware:
  """Tag every HTTP exchange with a request id and log its outcome and latency."""

  def __init__(self, app: ASGIApp, *, slow_request_ms: float = SLOW_REQUEST_MS) -> None:
    self.app = app
    self.slow_request_ms = slow_request_ms

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    # Exception handlers read it back from request.state.
    request_id = resolve_request_id(scope)
    scope.setdefault("state", {})["request_id"] = request_id
    method = scope.get("method", "UNKNOWN")
    path = scope.get("path", "")
    started = time.perf_counter()
    status_code = 0

    async def send_wrapper(message: dict[str, Any]) -> None:
      nonlocal status_code
      if message["type"] == "http.response.start":
        status_code = message.get("status", 0)
        MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
      await send(message)

    try:
      await self.app(scope, receive, send_wrapper)
    finally:
      elapsed_ms = (time.perf_counter() - started) * 1000
      if status_code >= 500 or status_code == 0:
        level = logging.ERROR
      elif elapsed_ms >= self.slow_request_ms:
        level = logging.WARNING
      else:
        level = logging.INFO
      logger.log(level, "%s %s status=%s duration_ms=%.1f request_id=%s", method, path, status_code or "none", elapsed_ms, request_id)


class SecurityHeadersMiddleware:
  """Strip server banners and keep job results out of shared caches."""

  def __init__(self, app: ASGIApp) -> None:
    self.app = app

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope["type"] != "http":
      await self.app(scope, receive, send)
      return

    private = scope.get("path", "").startswith(("/api/", "/admin/"))

    async def send_wrapper(message: dict[str, Any]) -> None:
      if message["type"] == "http.response.start":
        headers = MutableHeaders(scope=message)
        for banner in ("server", "x-powered-by"):
          if banner in headers:
            del headers[banner]
        headers["x-content-type-options"] = "nosniff"
        if private:
          headers["cache-control"] = "no-store"
      await send(message)

    await self.app(scope, receive, send_wrapper)
