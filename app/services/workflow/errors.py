"""Shared error classes for the scheduled workflow and its collaborators."""

from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base exception for the scheduled analysis/email workflow."""

    def __init__(self, message: str, code: str = "WORKFLOW_ERROR") -> None:
        super().__init__(message)
        self.code = code


class UserStoreError(WorkflowError):
    """Raised when the user store cannot be read or updated."""


class ConfigurationError(WorkflowError):
    """Raised when a required setting is missing at startup."""
