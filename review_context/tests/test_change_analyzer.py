"""
Tests for per-file change analysis.

Scenarios use an in-memory version-control double (FakeVcs) so every
edge case (new, deleted, binary, malformed diff) is deterministic.
"""

import itertools

import pytest
from pydantic import ValidationError

from review_context.modules.cache_store import ContentCache
from review_context.modules.context_windowing.change_analyzer import (
    ChangeAnalyzer,
    classify_file,
    compute_change_ratio,
    has_public_api_change,
)
from review_context.modules.errors import FileUnreadableError
from review_context.modules.schemas import (
    CacheConfig,
    ChangeAnalysis,
    ChangeKind,
    ContextConfig,
    FileCategory,
    Strategy,
)

from mocks.fake_vcs import make_diff, make_hunk, numbered_lines


@pytest.fixture
def memory_cache():
    return ContentCache(CacheConfig(persist_to_disk=False, cleanup_interval_seconds=0))


class TestScenarios:
    """End-to-end analysis scenarios."""

    def test_new_small_file_is_full_file(self, fake_vcs):
        fake_vcs.add_new_file("src/new.ts", numbered_lines(40))

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/new.ts")

        assert analysis.is_new
        assert analysis.change_ratio == 1.0
        assert analysis.deleted_lines == 0
        assert analysis.added_lines == 40
        assert analysis.chosen_strategy == Strategy.FULL_FILE
        assert analysis.estimated_tokens == 320
        assert [(r.start_line, r.end_line, r.kind) for r in analysis.regions] == [(1, 40, ChangeKind.ADDITION)]

    def test_new_file_detected_from_diff_marker(self, fake_vcs):
        content = numbered_lines(150)
        diff = make_diff("src/big.ts", "@@ -0,0 +1,150 @@", header=["new file mode 100644"])
        fake_vcs.add_file("src/big.ts", content, added=150, diff=diff)

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/big.ts")

        assert analysis.is_new
        assert analysis.change_ratio == 1.0
        assert analysis.chosen_strategy == Strategy.SMART_SUMMARY

    def test_small_localized_change_is_diff_only(self, fake_vcs):
        diff = make_diff(
            "src/report.ts",
            make_hunk(
                100,
                added=["    total += 1;", "    total += 2;", "    total += 3;"],
                removed=["    total += 0;", "    total -= 1;"],
            ),
        )
        fake_vcs.add_file("src/report.ts", numbered_lines(300), added=3, deleted=2, diff=diff)

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/report.ts")

        assert analysis.change_ratio == pytest.approx(5 / 300)
        assert analysis.region_count == 1
        assert not analysis.has_public_api_change
        assert analysis.chosen_strategy == Strategy.DIFF_ONLY
        assert analysis.estimated_tokens == 500

    def test_moderate_change_with_new_export_is_affected_blocks(self, fake_vcs):
        diff = make_diff(
            "src/service.ts",
            make_hunk(20, added=["    retries += 1;"] * 10, removed=["    retries = 0;"] * 5),
            make_hunk(90, added=["export function newApi(): void {", "    run();", "}"]),
            make_hunk(160, added=["    cleanup();"] * 12, removed=["    teardown();"] * 10),
            make_hunk(240, added=["    log(x);"] * 15, removed=["    print(x);"] * 5),
        )
        fake_vcs.add_file("src/service.ts", numbered_lines(300), added=40, deleted=20, diff=diff)

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/service.ts")

        assert analysis.change_ratio == pytest.approx(0.2)
        assert analysis.region_count == 4
        assert analysis.has_public_api_change
        assert analysis.chosen_strategy == Strategy.AFFECTED_BLOCKS

    def test_deleted_file_is_diff_only(self, fake_vcs):
        removed = "\n".join(f"-line {n}" for n in range(1, 13))
        diff = make_diff("src/old.ts", f"@@ -1,12 +0,0 @@\n{removed}", header=["deleted file mode 100644"])
        fake_vcs.add_deleted_file("src/old.ts", deleted=12, diff=diff)

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/old.ts")

        assert analysis.is_deleted
        assert analysis.added_lines == 0
        assert analysis.deleted_lines == 12
        assert analysis.regions == []
        assert analysis.chosen_strategy == Strategy.DIFF_ONLY

    def test_zero_line_file_with_only_deletions_is_deleted(self, fake_vcs):
        fake_vcs.add_file("src/emptied.ts", "", deleted=7, diff="@@ -1,7 +0,0 @@\n" + "-x\n" * 7)

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/emptied.ts")

        assert analysis.is_deleted
        assert analysis.regions == []
        assert analysis.chosen_strategy == Strategy.DIFF_ONLY

    def test_malformed_diff_still_yields_valid_analysis(self, fake_vcs):
        fake_vcs.add_file("src/odd.ts", numbered_lines(300), added=3, deleted=1, diff="garbage\n@@ nope @@\n+x\n")

        analysis = ChangeAnalyzer(fake_vcs).analyze("src/odd.ts")

        assert analysis.region_count == 0
        assert analysis.regions == []
        assert 0.0 <= analysis.change_ratio <= 1.0
        assert analysis.chosen_strategy == Strategy.DIFF_ONLY

    def test_undiffable_file_degrades_to_full_file(self, fake_vcs, log_messages):
        fake_vcs.add_file("assets/data.ts", numbered_lines(300), added=5, deleted=5)
        fake_vcs.break_diff("assets/data.ts", "binary file has no line statistics")

        analysis = ChangeAnalyzer(fake_vcs).analyze("assets/data.ts")

        assert analysis.chosen_strategy == Strategy.FULL_FILE
        assert analysis.estimated_tokens == 2400
        assert "binary file" in analysis.degraded_reason
        assert any(level == "WARNING" and "assets/data.ts" in msg for level, msg in log_messages)

    def test_missing_file_that_is_not_deleted_propagates(self, fake_vcs):
        with pytest.raises(FileUnreadableError):
            ChangeAnalyzer(fake_vcs).analyze("src/nowhere.ts")


class TestChangeRatio:

    def test_formula(self):
        assert compute_change_ratio(300, 3, 2) == pytest.approx(5 / 300)
        assert compute_change_ratio(10, 0, 50) == pytest.approx(50 / 60)
        assert compute_change_ratio(0, 0, 0) == 0.0

    def test_bounds(self):
        values = [0, 1, 2, 7, 50, 300, 5000]
        for line_count, added, deleted in itertools.product(values, repeat=3):
            ratio = compute_change_ratio(line_count, added, deleted)
            assert 0.0 <= ratio <= 1.0, (line_count, added, deleted)

    def test_new_file_invariant_is_enforced(self):
        with pytest.raises(ValidationError):
            ChangeAnalysis(file_path="a.ts", is_new=True, change_ratio=0.5)
        with pytest.raises(ValidationError):
            ChangeAnalysis(file_path="a.ts", is_new=True, change_ratio=1.0, deleted_lines=3)
        with pytest.raises(ValidationError):
            ChangeAnalysis(file_path="a.ts", is_deleted=True, added_lines=1)


@pytest.mark.parametrize(
    "path, expected",
    [
        ("src/app.test.ts", FileCategory.TEST),
        ("tests/test_api.py", FileCategory.TEST),
        ("src/__tests__/Button.tsx", FileCategory.TEST),
        ("pkg/server_test.go", FileCategory.TEST),
        ("src/specs/routes.ts", FileCategory.TEST),
        ("README.md", FileCategory.DOCS),
        ("docs/guide/example.ts", FileCategory.DOCS),
        ("config/app.json", FileCategory.CONFIG),
        ("webpack.config.js", FileCategory.CONFIG),
        (".env.local", FileCategory.CONFIG),
        ("deploy/settings.yaml", FileCategory.CONFIG),
        ("scripts/release.sh", FileCategory.BUILD),
        ("Makefile", FileCategory.BUILD),
        ("rollup.js", FileCategory.BUILD),
        ("src/latest.ts", FileCategory.CORE),
        ("src/contest.py", FileCategory.CORE),
        ("src/inspect.py", FileCategory.CORE),
    ],
)
def test_classify_file(path, expected):
    assert classify_file(path) == expected


@pytest.mark.parametrize(
    "line, path, expected",
    [
        ("export const handler = () => {};", "a.ts", True),
        ("export default class App {", "a.tsx", True),
        ("interface Props {", "a.ts", True),
        ("type Id = string;", "a.ts", True),
        ("public void run() {", "Runner.java", True),
        ("const local = 1;", "a.ts", False),
        ("def helper():", "m.py", True),
        ("class Service:", "m.py", True),
        ("__all__ = ['Service']", "m.py", True),
        ("def _private():", "m.py", False),
        ("    def method(self):", "m.py", False),
        ("func Exported() error {", "x.go", True),
        ("func (s *Server) Start() {", "x.go", True),
        ("func internal() {", "x.go", False),
    ],
)
def test_public_api_detection(line, path, expected):
    assert has_public_api_change([line], path) is expected


class TestAnalysisCache:
    """Write-through caching keyed by (baseline, path, mtime)."""

    def test_second_call_is_cache_hit(self, fake_vcs, memory_cache):
        fake_vcs.add_file("src/report.ts", numbered_lines(300), added=1, diff=make_diff("src/report.ts", make_hunk(10, ["x();"])))
        analyzer = ChangeAnalyzer(fake_vcs, ContextConfig(), cache=memory_cache)

        first = analyzer.analyze("src/report.ts")
        second = analyzer.analyze("src/report.ts")

        assert first == second
        assert fake_vcs.calls["diff_stats"] == 1
        assert memory_cache.stats().hits == 1

    def test_new_mtime_is_a_new_key(self, fake_vcs, memory_cache):
        fake_vcs.add_file("src/report.ts", numbered_lines(300), added=1, diff=make_diff("src/report.ts", make_hunk(10, ["x();"])))
        analyzer = ChangeAnalyzer(fake_vcs, ContextConfig(), cache=memory_cache)

        analyzer.analyze("src/report.ts")
        fake_vcs.touch("src/report.ts")
        analyzer.analyze("src/report.ts")

        assert fake_vcs.calls["diff_stats"] == 2
        assert memory_cache.stats().entry_count == 2

    def test_moved_baseline_is_a_new_key(self, fake_vcs, memory_cache):
        fake_vcs.add_file("src/report.ts", numbered_lines(300), added=1, diff=make_diff("src/report.ts", make_hunk(10, ["x();"])))
        fake_vcs.revisions["HEAD~1"] = "a" * 40
        analyzer = ChangeAnalyzer(fake_vcs, ContextConfig(), cache=memory_cache)

        analyzer.analyze("src/report.ts")
        fake_vcs.revisions["HEAD~1"] = "b" * 40
        analyzer.analyze("src/report.ts")
        analyzer.analyze("src/report.ts")

        assert fake_vcs.calls["diff_stats"] == 2
        assert memory_cache.stats().entry_count == 2
        assert memory_cache.entry(analyzer.cache_key("src/report.ts", fake_vcs.mtimes["src/report.ts"], "b" * 40)) is not None

    def test_entries_are_tagged(self, fake_vcs, memory_cache):
        fake_vcs.add_new_file("tests/test_x.py", "def test_x():\n    assert True\n")
        ChangeAnalyzer(fake_vcs, cache=memory_cache).analyze("tests/test_x.py")

        assert memory_cache.invalidate_tag("test") == 1

    def test_without_cache_recomputes(self, fake_vcs):
        fake_vcs.add_new_file("src/a.ts", numbered_lines(10))
        analyzer = ChangeAnalyzer(fake_vcs)

        analyzer.analyze("src/a.ts")
        analyzer.analyze("src/a.ts")

        assert fake_vcs.calls["diff_stats"] == 2
