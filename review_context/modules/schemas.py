"""
review_context - Core Data Structures (Pydantic Schemas)

Defines the data models used throughout the context pipeline:
- ChangeRegion: a contiguous changed span parsed from a unified diff
- ChangeAnalysis: per-file change facts plus the chosen extraction strategy
- ExtractedContext: the bounded text handed to the reviewer
- ContextConfig / CacheConfig / Settings: pipeline and cache configuration

Value models are frozen and JSON round-trippable so they can be stored in
the persisted content cache.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# ENUMS
# =============================================================================


class ChangeKind(str, Enum):
    """Kind of a contiguous change region."""

    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"


class FileCategory(str, Enum):
    """Coarse role of a file, derived from its path."""

    TEST = "test"
    CONFIG = "config"
    DOCS = "docs"
    BUILD = "build"
    CORE = "core"


class Strategy(str, Enum):
    """Context extraction strategy, declared in increasing token budget."""

    DIFF_ONLY = "diff_only"  # raw diff, tiny changes
    CONTEXT_WINDOW = "context_window"  # diff + surrounding lines
    AFFECTED_BLOCKS = "affected_blocks"  # enclosing functions/classes
    SMART_SUMMARY = "smart_summary"  # header + change digest
    FULL_FILE = "full_file"  # whole file

    @property
    def rank(self) -> int:
        return STRATEGY_ORDER.index(self)


STRATEGY_ORDER = (
    Strategy.DIFF_ONLY,
    Strategy.CONTEXT_WINDOW,
    Strategy.AFFECTED_BLOCKS,
    Strategy.SMART_SUMMARY,
    Strategy.FULL_FILE,
)


class CachePolicy(str, Enum):
    """Eviction policy of the content cache."""

    LRU = "lru"  # oldest access first
    LFU = "lfu"  # lowest access count first
    TTL = "ttl"  # soonest expiry first


# =============================================================================
# PIPELINE VALUES
# =============================================================================


class ChangeRegion(BaseModel):
    """Contiguous changed span, 1-indexed new-file line numbers (inclusive)."""

    model_config = ConfigDict(frozen=True)

    start_line: int = Field(..., ge=1)
    end_line: int = Field(..., ge=1)
    size: int = Field(..., ge=1)
    kind: ChangeKind = ChangeKind.MODIFICATION
    # First/last +/- line inside the span; None means the whole span changed.
    changed_start: Optional[int] = Field(default=None, ge=1)
    changed_end: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_span(self) -> "ChangeRegion":
        if self.end_line < self.start_line:
            raise ValueError("end_line must not precede start_line")
        first, last = self.changed_span
        if not (self.start_line <= first <= last <= self.end_line):
            raise ValueError("changed lines must lie inside the region")
        return self

    @property
    def changed_span(self) -> Tuple[int, int]:
        first = self.start_line if self.changed_start is None else self.changed_start
        last = self.end_line if self.changed_end is None else self.changed_end
        return first, last


class ChangeAnalysis(BaseModel):
    """Change facts for one file against one baseline."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    baseline: str = "HEAD~1"
    file_line_count: int = Field(default=0, ge=0)
    change_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    region_count: int = Field(default=0, ge=0)
    max_region_size: int = Field(default=0, ge=0)
    added_lines: int = Field(default=0, ge=0)
    deleted_lines: int = Field(default=0, ge=0)
    is_new: bool = False
    is_deleted: bool = False
    file_category: FileCategory = FileCategory.CORE
    has_public_api_change: bool = False
    chosen_strategy: Strategy = Strategy.FULL_FILE
    estimated_tokens: int = Field(default=0, ge=0)
    regions: List[ChangeRegion] = Field(default_factory=list)
    # Set when version control could not diff the file and the analysis degraded.
    degraded_reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "ChangeAnalysis":
        if self.is_new and (self.change_ratio != 1.0 or self.deleted_lines != 0):
            raise ValueError("new files must have change_ratio=1.0 and no deleted lines")
        if self.is_deleted and self.added_lines != 0:
            raise ValueError("deleted files cannot have added lines")
        return self


class ExtractedContext(BaseModel):
    """The slice of a file forwarded to the reviewer."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    strategy: Strategy
    # Differs from `strategy` only when the requested extractor degraded.
    requested_strategy: Strategy
    text: str
    original_line_count: int = Field(..., ge=0)
    extracted_line_count: int = Field(..., ge=0)
    compression_ratio: float = Field(..., ge=0.0)
    estimated_tokens: int = Field(..., ge=0)

    @property
    def degraded(self) -> bool:
        return self.strategy != self.requested_strategy


class ReviewContext(BaseModel):
    """Analysis and extracted context for one reviewed file."""

    model_config = ConfigDict(frozen=True)

    file_path: str
    analysis: ChangeAnalysis
    context: ExtractedContext


# =============================================================================
# CONFIGURATION
# =============================================================================


class ContextConfig(BaseModel):
    """Pipeline configuration supplied by the config loader."""

    max_tokens_per_file: int = Field(default=4000, ge=1, description="Ceiling for FullFile estimates")
    context_window_lines: int = Field(default=20, ge=0, description="Lines around each change region")
    enable_cache: bool = Field(default=True)
    cache_strategy: CachePolicy = Field(default=CachePolicy.LRU)
    baseline: str = Field(default="HEAD~1", min_length=1, description="Revision diffs are taken against")
    summary_header_lines: int = Field(default=30, ge=0)
    summary_top_regions: int = Field(default=3, ge=0)
    summary_window_lines: int = Field(default=5, ge=0)
    summary_region_line_limit: int = Field(default=60, ge=1, description="Lines shown per key change")


class CacheConfig(BaseModel):
    """Content cache configuration."""

    enabled: bool = True
    strategy: CachePolicy = CachePolicy.LRU
    cache_dir: str = Field(default=".review-context-cache")
    snapshot_name: str = Field(default="cache.json", min_length=1)
    max_size_bytes: int = Field(default=100 * 1024 * 1024, ge=1)
    max_entries: int = Field(default=1000, ge=1)
    default_ttl_seconds: float = Field(default=86400.0, gt=0)
    cleanup_interval_seconds: float = Field(default=3600.0, ge=0, description="0 disables the sweeper")
    persist_to_disk: bool = True
    backup_interval_seconds: float = Field(default=21600.0, ge=0, description="0 disables timed snapshots")

    @property
    def snapshot_path(self) -> Path:
        return Path(self.cache_dir) / self.snapshot_name


class Settings(BaseModel):
    """Top-level settings: the `context` and `cache` sections of config.yaml."""

    context: ContextConfig = Field(default_factory=ContextConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    def effective_cache_config(self) -> CacheConfig:
        """Cache config with the pipeline-level switches applied."""
        return self.cache.model_copy(
            update={
                "enabled": self.cache.enabled and self.context.enable_cache,
                "strategy": self.context.cache_strategy,
            }
        )
