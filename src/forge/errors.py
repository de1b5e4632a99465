"""Exception types shared by the index, sync, and claim layers."""

from __future__ import annotations


class ForgeError(Exception):
    """Base class for forge failures."""


class TaskValidationError(ForgeError, ValueError):
    """A field value was rejected before any write was applied."""


class InvalidTransitionError(TaskValidationError):
    """The requested status change is not allowed from the current status."""


class TaskNotFoundError(ForgeError, LookupError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found.")


class IndexLockTimeout(ForgeError):
    """The index writer lock was not acquired within the busy timeout.

    Callers may retry; forge itself never does.
    """

    retryable = True


class WorkspaceNotFoundError(ForgeError):
    """No .forge directory exists at or above the starting directory."""
