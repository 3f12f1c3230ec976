# review_context modules

# Pydantic schemas
from .schemas import (
    CacheConfig,
    CachePolicy,
    ChangeAnalysis,
    ChangeKind,
    ChangeRegion,
    ContextConfig,
    ExtractedContext,
    FileCategory,
    ReviewContext,
    Settings,
    Strategy,
)

# Errors
from .errors import (
    BoundaryDetectionError,
    CacheIOError,
    ConfigError,
    ContextPipelineError,
    DiffUnavailableError,
    FileUnreadableError,
    NoBaselineError,
)

# Collaborators
from .cache_store import CacheEntry, CacheEvent, CacheStats, ContentCache
from .config_loader import load_settings
from .git_provider import GitProvider, VersionControl

__all__ = [
    # Schemas
    "CacheConfig",
    "CachePolicy",
    "ChangeAnalysis",
    "ChangeKind",
    "ChangeRegion",
    "ContextConfig",
    "ExtractedContext",
    "FileCategory",
    "ReviewContext",
    "Settings",
    "Strategy",
    # Errors
    "BoundaryDetectionError",
    "CacheIOError",
    "ConfigError",
    "ContextPipelineError",
    "DiffUnavailableError",
    "FileUnreadableError",
    "NoBaselineError",
    # Cache
    "CacheEntry",
    "CacheEvent",
    "CacheStats",
    "ContentCache",
    # Config / version control
    "load_settings",
    "GitProvider",
    "VersionControl",
]
