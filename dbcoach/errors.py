"""Exception hierarchy for DB.Coach.

Only programmer and configuration errors are raised to callers. Storage
outages and backend failures are absorbed by the pipeline and the capture
store and surface as logged soft errors instead.
"""

from __future__ import annotations


class DBCoachError(Exception):
    """Base class for all DB.Coach errors."""


class SessionNotFoundError(DBCoachError, KeyError):
    """Raised when an operation references an unknown streaming session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No active session found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransitionError(DBCoachError):
    """Raised when a task is moved to a state its lifecycle does not allow."""


class MissingCredentialError(DBCoachError):
    """Raised at startup when a required credential is not configured."""

    def __init__(self, env_var: str) -> None:
        super().__init__(
            f"{env_var} is not set. Add it to your environment, "
            f"~/.dbcoach/keys.env, or a .env file."
        )
        self.env_var = env_var


class PhaseExecutionError(DBCoachError):
    """A single generation phase failed (backend error, timeout, bad output)."""


class ProjectStorageError(DBCoachError):
    """The project storage collaborator rejected a write or read."""
