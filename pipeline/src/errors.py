"""
Neighborhood News: Pipeline Exceptions
Transient and malformed-response errors are resolved to fail-soft defaults inside
each stage. Store errors are fatal to the current run only.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class StoreUnavailableError(PipelineError):
    """The SQLite store could not be opened or written. Fatal to the run."""


class OracleError(PipelineError):
    """The AI oracle call failed after all retries."""


class MalformedResponseError(PipelineError):
    """The oracle answered, but the text did not contain the expected JSON object."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class FeedFetchError(PipelineError):
    """A feed could not be fetched or parsed."""


class GenerationError(PipelineError):
    """Content generation produced nothing usable for an item."""


class InvalidTransitionError(PipelineError):
    """A content status transition is not allowed from the current state."""


class DuplicateSourceError(PipelineError):
    """Another source is already registered with the same URL."""


class RunCancelled(PipelineError):
    """The run was cancelled before this unit of work started."""


class ContentNotFoundError(PipelineError):
    """No content row exists with the given id."""


class LeaseHeldError(PipelineError):
    """Another exclusive run currently holds the run lease."""
