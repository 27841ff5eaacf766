"""
Error taxonomy for Bookgen Agent.

Every failure the orchestration layer raises on purpose derives from
BookgenError so callers (the CLI, the API server, the worker loops) can
tell expected outcomes apart from programming errors.
"""

from typing import List, Optional


class BookgenError(Exception):
    """Base class for all expected Bookgen failures."""


class ValidationError(BookgenError, ValueError):
    """Request is malformed. Raised before any state is touched."""


class NotFoundError(BookgenError, LookupError):
    """Book, job or chapter does not exist."""


class ConflictError(BookgenError):
    """A non-terminal job already exists for the book."""


class InvalidTransitionError(BookgenError):
    """Requested state change is not allowed from the current status."""

    def __init__(self, message: str, current: Optional[str] = None,
                 target: Optional[str] = None):
        super().__init__(message)
        self.current = current
        self.target = target


class InsufficientCreditsError(BookgenError):
    """User has no credits left for a new generation."""


class UpstreamGenerationFailure(BookgenError, RuntimeError):
    """A text, image, speech or search collaborator failed."""


class NotReadyError(BookgenError):
    """Publish was requested for a book that fails readiness checks.

    Attributes:
        issues: Human readable list of readiness violations.
    """

    def __init__(self, issues: List[str]):
        super().__init__(f"Book is not ready to publish: {'; '.join(issues)}")
        self.issues = list(issues)
