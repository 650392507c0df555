from . import admin, history, jobs

__all__ = ["admin", "history", "jobs"]
