"""
Strategy Selector for Change-Aware Context Windowing.

Pure decision table mapping a ChangeAnalysis to one of five extraction
strategies. Cheap strategies are preferred for small, localized changes;
full-file review is chosen where the savings would be negligible.

Increasing change_ratio (other facts fixed) never lowers the budget.
"""

from __future__ import annotations

from typing import Dict

from ..schemas import ChangeAnalysis, FileCategory, Strategy


# Thresholds, first match wins.
SMALL_NEW_FILE_LINES = 100
TINY_FILE_LINES = 20
SMALL_CONFIG_LINES = 50
MINOR_CHANGE_RATIO = 0.10
MODERATE_CHANGE_RATIO = 0.30
MAJOR_CHANGE_RATIO = 0.70
FEW_REGIONS = 2
LARGE_FILE_LINES = 100
REWRITE_FULL_FILE_LINES = 150

BASE_TOKENS: Dict[Strategy, int] = {
    Strategy.DIFF_ONLY: 500,
    Strategy.CONTEXT_WINDOW: 1000,
    Strategy.AFFECTED_BLOCKS: 2000,
    Strategy.SMART_SUMMARY: 3000,
}
FULL_FILE_TOKENS_PER_LINE = 8


def select_strategy(analysis: ChangeAnalysis) -> Strategy:
    """Choose the extraction strategy for an analysed file."""
    if analysis.is_deleted:
        return Strategy.DIFF_ONLY

    if analysis.is_new:
        if analysis.file_line_count < SMALL_NEW_FILE_LINES:
            return Strategy.FULL_FILE
        return Strategy.SMART_SUMMARY

    if analysis.file_line_count < TINY_FILE_LINES:
        return Strategy.FULL_FILE

    if analysis.file_category == FileCategory.CONFIG and analysis.file_line_count < SMALL_CONFIG_LINES:
        return Strategy.FULL_FILE

    ratio = analysis.change_ratio
    if ratio <= MINOR_CHANGE_RATIO:
        return Strategy.DIFF_ONLY if analysis.region_count <= FEW_REGIONS else Strategy.CONTEXT_WINDOW

    if ratio <= MODERATE_CHANGE_RATIO:
        return Strategy.AFFECTED_BLOCKS if analysis.has_public_api_change else Strategy.CONTEXT_WINDOW

    if ratio <= MAJOR_CHANGE_RATIO:
        return Strategy.SMART_SUMMARY if analysis.file_line_count > LARGE_FILE_LINES else Strategy.AFFECTED_BLOCKS

    return Strategy.FULL_FILE if analysis.file_line_count < REWRITE_FULL_FILE_LINES else Strategy.SMART_SUMMARY


def estimate_tokens(strategy: Strategy, file_line_count: int, max_tokens_per_file: int) -> int:
    """Relative token budget for a strategy; not tied to any tokenizer."""
    if strategy == Strategy.FULL_FILE:
        return min(file_line_count * FULL_FILE_TOKENS_PER_LINE, max_tokens_per_file)
    return BASE_TOKENS[strategy]


def estimate_text_tokens(text: str) -> int:
    # Deterministic heuristic (rough): ~4 chars/token average.
    return max(1, (len(text) + 3) // 4)
