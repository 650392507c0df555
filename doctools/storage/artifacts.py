"""Filesystem artifact storage under `<storage_root>/<module>/<job_id>/`."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path

from doctools.core.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str, *, fallback: str = "output") -> str:
  """Reduce a user-supplied filename to a single safe path segment."""
  base = Path(name).name
  cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
  return cleaned or fallback


class ArtifactStore:
  """Write and purge job outputs; all disk I/O runs in a worker thread."""

  def __init__(self, root: str | Path) -> None:
    self.root = Path(root)

  def job_dir(self, module_key: str, job_id: str) -> Path:
    return self.root / safe_filename(module_key) / safe_filename(job_id)

  def _write(self, path: Path, content: str | bytes) -> str:
    try:
      path.parent.mkdir(parents=True, exist_ok=True)
      if isinstance(content, bytes):
        path.write_bytes(content)
      else:
        path.write_text(content, encoding="utf-8")
    except OSError as exc:
      raise StorageError(f"Failed to write artifact {path}: {exc}") from exc
    return str(path)

  async def write_item(self, module_key: str, job_id: str, round_number: int, ordinal: int, filename: str, content: str | bytes) -> str:
    """Persist one item's output and return its path."""
    name = f"r{round_number}_{ordinal:03d}_{safe_filename(filename)}"
    path = self.job_dir(module_key, job_id) / name
    return await asyncio.to_thread(self._write, path, content)

  async def write_aggregate(self, module_key: str, job_id: str, filename: str, content: str | bytes) -> str:
    """Persist the job-level artifact and return its path."""
    path = self.job_dir(module_key, job_id) / safe_filename(filename, fallback="result")
    return await asyncio.to_thread(self._write, path, content)

  def _remove(self, path: Path) -> None:
    try:
      shutil.rmtree(path)
    except FileNotFoundError:
      # Already gone counts as removed.
      return
    except OSError as exc:
      raise StorageError(f"Failed to remove {path}: {exc}") from exc

  async def remove_job_dir(self, module_key: str, job_id: str) -> None:
    """Delete a job's artifact directory; a missing directory is not an error."""
    await asyncio.to_thread(self._remove, self.job_dir(module_key, job_id))

  def is_within_root(self, path: str | Path) -> bool:
    """Guard downloads against paths outside the storage root."""
    try:
      Path(path).resolve().relative_to(self.root.resolve())
    except ValueError:
      return False
    return True
