"""Schema package exports."""

from .history import UserJobHistory
from .jobs import JOB_TABLES, job_tables_for
from .module_configs import ModuleConfig
from .reference import GlossaryTerm, JournalReference, JournalTopic, JournalTopicScore
from .usage import UsageEvent, UsageGroup, UsageGroupLimit
from .users import User, UserSession

__all__ = [
  "JOB_TABLES",
  "GlossaryTerm",
  "JournalReference",
  "JournalTopic",
  "JournalTopicScore",
  "ModuleConfig",
  "UsageEvent",
  "UsageGroup",
  "UsageGroupLimit",
  "User",
  "UserJobHistory",
  "UserSession",
  "job_tables_for",
]
