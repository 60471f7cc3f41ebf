"""Rebase jobs with validated, auditable conflict resolution."""

__version__ = "0.1.0"
