from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from doctools.config import Settings, get_settings
from doctools.core.database import get_db
from doctools.schema.users import User, UserSession


@dataclass(frozen=True)
class CurrentUser:
  """Authenticated caller resolved from an opaque session token."""

  id: uuid.UUID
  username: str
  is_admin: bool = False


def _extract_token(request: Request, settings: Settings) -> str | None:
  header = request.headers.get("authorization") or ""
  scheme, _, credentials = header.partition(" ")
  if scheme.lower() == "bearer" and credentials.strip():
    return credentials.strip()
  cookie = request.cookies.get(settings.session_cookie_name)
  if cookie and cookie.strip():
    return cookie.strip()
  return None


async def resolve_session_user(db: AsyncSession, token: str, *, now: datetime.datetime | None = None) -> CurrentUser | None:
  """Return the user owning an unexpired session token."""
  current = now or datetime.datetime.now(datetime.UTC)
  stmt = select(User.id, User.username, User.is_admin).join(UserSession, UserSession.user_id == User.id).where(UserSession.token == token, UserSession.expires_at > current)
  row = (await db.execute(stmt)).one_or_none()
  if row is None:
    return None
  user_id, username, is_admin = row
  return CurrentUser(id=user_id, username=username, is_admin=bool(is_admin))


async def get_current_active_user(request: Request, settings: Settings = Depends(get_settings), db: AsyncSession = Depends(get_db)) -> CurrentUser:  # noqa: B008
  """Resolve the caller or raise 401."""
  token = _extract_token(request, settings)
  if token is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
  user = await resolve_session_user(db, token)
  if user is None:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired session", headers={"WWW-Authenticate": "Bearer"})
  return user


async def get_current_admin_user(current_user: CurrentUser = Depends(get_current_active_user)) -> CurrentUser:  # noqa: B008
  if not current_user.is_admin:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
  return current_user
