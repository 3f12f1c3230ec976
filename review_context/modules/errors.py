"""Exception taxonomy for the review context pipeline.

Every class except ConfigError is recoverable: callers catch it at the
smallest scope and degrade to a weaker but valid result.
"""

from __future__ import annotations

from typing import Optional


class ContextPipelineError(RuntimeError):
    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class DiffUnavailableError(ContextPipelineError):
    """Version control could not produce a diff (binary, timeout, git failure)."""


class NoBaselineError(DiffUnavailableError):
    """The baseline revision, or the path inside it, does not exist."""


class FileUnreadableError(ContextPipelineError):
    """The working-tree file is missing or cannot be read."""


class BoundaryDetectionError(ContextPipelineError):
    """Block boundaries could not be located (no declaration, unbalanced braces)."""


class CacheIOError(ContextPipelineError):
    """Reading or writing the cache snapshot failed."""


class ConfigError(ValueError):
    pass
