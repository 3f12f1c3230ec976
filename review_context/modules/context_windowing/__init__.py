"""
Context Windowing Package for change-aware review context.

Decides how much of each changed file a reviewer needs and extracts it.

Components:
- diff_parser: unified diff -> ChangeRegion list
- ChangeAnalyzer: per-file change facts (ratio, category, public API)
- select_strategy: decision table over five extraction strategies
- extract_context: the five extraction algorithms
- ContextPipeline: high-level API combining all components with the cache
"""

from .diff_parser import (
    ParsedDiff,
    parse_unified_diff,
    parse_diff_regions,
    merge_line_ranges,
)

from .change_analyzer import (
    ChangeAnalyzer,
    classify_file,
    compute_change_ratio,
    has_public_api_change,
)

from .strategy_selector import (
    select_strategy,
    estimate_tokens,
    estimate_text_tokens,
)

from .context_extractor import (
    ExtractionRequest,
    extract_context,
    find_enclosing_block,
    find_header_end,
    mask_code,
)

from .pipeline import ContextPipeline

__all__ = [
    # Diff parsing
    "ParsedDiff",
    "parse_unified_diff",
    "parse_diff_regions",
    "merge_line_ranges",
    # Change analysis
    "ChangeAnalyzer",
    "classify_file",
    "compute_change_ratio",
    "has_public_api_change",
    # Strategy selection
    "select_strategy",
    "estimate_tokens",
    "estimate_text_tokens",
    # Extraction
    "ExtractionRequest",
    "extract_context",
    "find_enclosing_block",
    "find_header_end",
    "mask_code",
    # High-level API
    "ContextPipeline",
]
