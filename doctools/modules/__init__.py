"""Tool-module handlers registered with the job engine."""
