"""Tests for the strategy decision table and token estimates."""

import itertools

import pytest

from review_context.modules.context_windowing.strategy_selector import (
    estimate_text_tokens,
    estimate_tokens,
    select_strategy,
)
from review_context.modules.schemas import ChangeAnalysis, FileCategory, Strategy


def make_analysis(**overrides) -> ChangeAnalysis:
    facts = dict(
        file_path="src/service.ts",
        file_line_count=300,
        change_ratio=0.05,
        region_count=1,
        added_lines=10,
        deleted_lines=5,
        file_category=FileCategory.CORE,
        has_public_api_change=False,
    )
    facts.update(overrides)
    if facts.get("is_new"):
        facts.update(change_ratio=1.0, deleted_lines=0)
    if facts.get("is_deleted"):
        facts.update(added_lines=0)
    return ChangeAnalysis(**facts)


@pytest.mark.parametrize(
    "overrides, expected",
    [
        # Deleted files
        (dict(is_deleted=True), Strategy.DIFF_ONLY),
        # New files
        (dict(is_new=True, file_line_count=40), Strategy.FULL_FILE),
        (dict(is_new=True, file_line_count=99), Strategy.FULL_FILE),
        (dict(is_new=True, file_line_count=100), Strategy.SMART_SUMMARY),
        # Tiny files
        (dict(file_line_count=19, change_ratio=0.05), Strategy.FULL_FILE),
        (dict(file_line_count=20, change_ratio=0.05), Strategy.DIFF_ONLY),
        # Small config files
        (dict(file_category=FileCategory.CONFIG, file_line_count=49), Strategy.FULL_FILE),
        (dict(file_category=FileCategory.CONFIG, file_line_count=50), Strategy.DIFF_ONLY),
        # Minor changes
        (dict(change_ratio=0.10, region_count=2), Strategy.DIFF_ONLY),
        (dict(change_ratio=0.10, region_count=3), Strategy.CONTEXT_WINDOW),
        # Moderate changes
        (dict(change_ratio=0.2, has_public_api_change=True), Strategy.AFFECTED_BLOCKS),
        (dict(change_ratio=0.2), Strategy.CONTEXT_WINDOW),
        (dict(change_ratio=0.30, has_public_api_change=True), Strategy.AFFECTED_BLOCKS),
        # Major changes
        (dict(change_ratio=0.5, file_line_count=101), Strategy.SMART_SUMMARY),
        (dict(change_ratio=0.5, file_line_count=100), Strategy.AFFECTED_BLOCKS),
        (dict(change_ratio=0.70, file_line_count=60), Strategy.AFFECTED_BLOCKS),
        # Rewrites
        (dict(change_ratio=0.8, file_line_count=149), Strategy.FULL_FILE),
        (dict(change_ratio=0.8, file_line_count=150), Strategy.SMART_SUMMARY),
    ],
)
def test_decision_table(overrides, expected):
    assert select_strategy(make_analysis(**overrides)) == expected


def test_deleted_wins_over_everything():
    analysis = make_analysis(is_deleted=True, file_line_count=5, file_category=FileCategory.CONFIG)
    assert select_strategy(analysis) == Strategy.DIFF_ONLY


@pytest.mark.parametrize(
    "line_count, region_count, api_change, category",
    list(
        itertools.product(
            [20, 50, 100, 101, 149, 150, 300, 5000],
            [1, 2, 3, 12],
            [False, True],
            [FileCategory.CORE, FileCategory.CONFIG, FileCategory.TEST],
        )
    ),
)
def test_strategy_is_monotonic_in_change_ratio(line_count, region_count, api_change, category):
    ratios = [i / 100 for i in range(0, 101)]
    ranks = [
        select_strategy(
            make_analysis(
                file_line_count=line_count,
                region_count=region_count,
                has_public_api_change=api_change,
                file_category=category,
                change_ratio=ratio,
            )
        ).rank
        for ratio in ratios
    ]
    assert ranks == sorted(ranks)


def test_strategy_order():
    assert [s.rank for s in Strategy] == [0, 1, 2, 3, 4]
    assert Strategy.DIFF_ONLY.rank < Strategy.FULL_FILE.rank


class TestTokenEstimates:

    @pytest.mark.parametrize(
        "strategy, expected",
        [
            (Strategy.DIFF_ONLY, 500),
            (Strategy.CONTEXT_WINDOW, 1000),
            (Strategy.AFFECTED_BLOCKS, 2000),
            (Strategy.SMART_SUMMARY, 3000),
        ],
    )
    def test_fixed_budgets(self, strategy, expected):
        assert estimate_tokens(strategy, 300, 4000) == expected

    def test_full_file_scales_with_lines(self):
        assert estimate_tokens(Strategy.FULL_FILE, 40, 4000) == 320
        assert estimate_tokens(Strategy.FULL_FILE, 0, 4000) == 0

    def test_full_file_ceiling(self):
        assert estimate_tokens(Strategy.FULL_FILE, 1000, 4000) == 4000
        assert estimate_tokens(Strategy.FULL_FILE, 300, 2000) == 2000

    def test_text_tokens(self):
        assert estimate_text_tokens("") == 1
        assert estimate_text_tokens("abcd") == 1
        assert estimate_text_tokens("abcde") == 2
        assert estimate_text_tokens("x" * 400) == 100
