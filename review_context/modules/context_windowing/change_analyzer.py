"""
Change Analyzer for Change-Aware Context Windowing.

Collects the facts the strategy selector needs for one file: line count,
path category, diff statistics and regions, change ratio and a cheap
"touches a public declaration" heuristic. Results are written through to
the content cache under (baseline commit, path, mtime).

Failure handling:
- no baseline (first commit, or file absent from the baseline) -> new file
- missing file that version control reports as deleted -> is_deleted
- any other diff failure (binary, git error) -> full_file, warning logged
- missing file that is not a deletion -> FileUnreadableError propagates
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Sequence

from loguru import logger
from pydantic import ValidationError

from ..cache_store import ContentCache, build_key
from ..errors import DiffUnavailableError, FileUnreadableError, NoBaselineError
from ..git_provider import VersionControl
from ..schemas import ChangeAnalysis, ChangeKind, ChangeRegion, ContextConfig, FileCategory, Strategy
from .diff_parser import ParsedDiff, parse_unified_diff
from .strategy_selector import estimate_tokens, select_strategy


# Path heuristics, checked in this order.
TEST_PATH = re.compile(r'(?:^|[/._-])(?:tests?|specs?|__tests__|__mocks__)(?:[/._-]|$)', re.IGNORECASE)
DOCS_SUFFIXES = {".md", ".markdown", ".rst", ".txt", ".adoc", ".doc"}
DOCS_DIRS = {"docs", "doc"}
CONFIG_SUFFIXES = {".json", ".yml", ".yaml", ".toml", ".ini", ".cfg", ".conf", ".env", ".properties"}
BUILD_NAMES = {"makefile", "dockerfile", "jenkinsfile", "rakefile", "cmakelists.txt", "build.gradle", "pom.xml"}
BUILD_SUFFIXES = {".sh", ".bat", ".ps1", ".mk", ".gradle"}
BUILD_HINTS = ("build", "webpack", "rollup", "gulpfile", "gruntfile")

# Declarations that are visible outside the file.
API_PATTERNS: List[Pattern[str]] = [
    re.compile(r'^\s*export\s+(?:default\s+)?(?:declare\s+)?(?:async\s+)?'
               r'(?:function|class|interface|type|const|let|var|enum|abstract)\b'),
    re.compile(r'\bpublic\s+(?:(?:static|abstract|final|async|override|virtual)\s+)*'
               r'(?:function|class|interface|enum|[\w<>\[\],.?]+\s+\w+\s*\()'),
    re.compile(r'^\s*(?:export\s+)?interface\s+\w+'),
    re.compile(r'^\s*(?:export\s+)?type\s+\w+\s*(?:<[^>]*>)?\s*='),
]
LANGUAGE_API_PATTERNS: Dict[str, List[Pattern[str]]] = {
    ".py": [
        re.compile(r'^(?:async\s+)?def\s+[A-Za-z]\w*'),
        re.compile(r'^class\s+[A-Za-z]\w*'),
        re.compile(r'^__all__\s*[+]?='),
    ],
    ".go": [
        re.compile(r'^func\s+(?:\([^)]*\)\s*)?[A-Z]\w*'),
        re.compile(r'^type\s+[A-Z]\w*\s'),
    ],
}
LANGUAGE_API_PATTERNS[".pyi"] = LANGUAGE_API_PATTERNS[".py"]


def classify_file(path: str) -> FileCategory:
    """Coarse file category from the path alone."""
    normalized = path.replace("\\", "/")
    p = Path(normalized)
    name = p.name.lower()
    suffix = p.suffix.lower()
    parts = {part.lower() for part in p.parts[:-1]}

    if TEST_PATH.search(normalized):
        return FileCategory.TEST

    if suffix in DOCS_SUFFIXES or parts & DOCS_DIRS:
        return FileCategory.DOCS

    if "config" in name or suffix in CONFIG_SUFFIXES or name.startswith(".env"):
        return FileCategory.CONFIG

    if name in BUILD_NAMES or suffix in BUILD_SUFFIXES or any(h in name for h in BUILD_HINTS):
        return FileCategory.BUILD

    return FileCategory.CORE


def has_public_api_change(lines: Sequence[str], file_path: str = "") -> bool:
    """True if any line looks like an exported or public declaration."""
    patterns = API_PATTERNS + LANGUAGE_API_PATTERNS.get(Path(file_path).suffix.lower(), [])
    return any(p.search(line) for line in lines for p in patterns)


def compute_change_ratio(file_line_count: int, added: int, deleted: int) -> float:
    """(added+deleted) / max(lines + max(0, deleted-added), 1), clamped to [0, 1]."""
    file_line_count, added, deleted = max(0, file_line_count), max(0, added), max(0, deleted)
    base = max(file_line_count + max(0, deleted - added), 1)
    return min(1.0, (added + deleted) / base)


def decode_content(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


class ChangeAnalyzer:
    """
    Builds a ChangeAnalysis per file against the configured baseline.

    Usage:
        analyzer = ChangeAnalyzer(GitProvider("."), ContextConfig(), cache=cache)
        analysis = analyzer.analyze("src/app.ts")
        print(analysis.chosen_strategy, analysis.change_ratio)
    """

    def __init__(
        self,
        provider: VersionControl,
        config: Optional[ContextConfig] = None,
        cache: Optional[ContentCache] = None,
    ):
        self.provider = provider
        self.config = config or ContextConfig()
        self.cache = cache

    def cache_key(self, path: str, mtime_ns: int, revision: Optional[str] = None) -> str:
        """Analysis key; `revision` is the commit the baseline resolved to, when known."""
        return build_key("analysis", revision or self.config.baseline, path, mtime_ns)

    def analyze(self, path: str) -> ChangeAnalysis:
        mtime = self.provider.mtime_ns(path)
        key = None
        if self.cache is not None and mtime is not None:
            # A symbolic baseline such as HEAD~1 moves with every commit.
            key = self.cache_key(path, mtime, self.provider.resolve_baseline(self.config.baseline))

        if key is not None:
            cached = self.cache.get(key)
            if cached is not None:
                try:
                    analysis = ChangeAnalysis.model_validate(cached)
                    logger.debug(f"Analysis cache hit: {path}")
                    return analysis
                except ValidationError as e:
                    logger.warning(f"Discarding stale cached analysis for {path}: {e}")
                    self.cache.invalidate(key)

        analysis = self._analyze(path)

        if key is not None:
            self.cache.set(
                key,
                analysis.model_dump(mode="json"),
                tags=["analysis", analysis.file_category.value],
            )
        return analysis

    # ------------------------------------------------------------------

    def _analyze(self, path: str) -> ChangeAnalysis:
        baseline = self.config.baseline
        category = classify_file(path)

        try:
            content = decode_content(self.provider.read_file(path))
        except FileUnreadableError:
            deleted = self._deleted_analysis(path, category)
            if deleted is None:
                raise
            return deleted

        lines = content.splitlines()
        line_count = len(lines)

        try:
            added, deleted_count = self.provider.diff_stats(path, baseline)
            parsed = parse_unified_diff(self.provider.diff_regions(path, baseline))
        except NoBaselineError as e:
            logger.debug(f"{path}: {e}; treating as new file")
            return self._new_file_analysis(path, category, lines, ParsedDiff())
        except DiffUnavailableError as e:
            logger.warning(f"{path}: diff unavailable ({e}); falling back to full_file")
            return self._degraded_analysis(path, category, line_count, str(e))

        if line_count == 0 and added == 0 and deleted_count > 0:
            return self._finish(
                file_path=path,
                file_category=category,
                deleted_lines=deleted_count,
                change_ratio=1.0,
                is_deleted=True,
            )

        if parsed.is_new_file or (deleted_count == 0 and line_count > 0 and added == line_count):
            return self._new_file_analysis(path, category, lines, parsed)

        return self._finish(
            file_path=path,
            file_category=category,
            file_line_count=line_count,
            change_ratio=compute_change_ratio(line_count, added, deleted_count),
            added_lines=added,
            deleted_lines=deleted_count,
            regions=parsed.regions,
            has_public_api_change=has_public_api_change(parsed.added_text + parsed.removed_text, path),
        )

    def _new_file_analysis(
        self,
        path: str,
        category: FileCategory,
        lines: List[str],
        parsed: ParsedDiff,
    ) -> ChangeAnalysis:
        line_count = len(lines)
        regions = list(parsed.regions)
        if not regions and line_count > 0:
            regions = [ChangeRegion(start_line=1, end_line=line_count, size=line_count, kind=ChangeKind.ADDITION)]
        return self._finish(
            file_path=path,
            file_category=category,
            file_line_count=line_count,
            change_ratio=1.0,
            added_lines=line_count,
            regions=regions,
            is_new=True,
            has_public_api_change=has_public_api_change(lines, path),
        )

    def _deleted_analysis(self, path: str, category: FileCategory) -> Optional[ChangeAnalysis]:
        """Analysis for a missing file, or None when version control does not show a deletion."""
        baseline = self.config.baseline
        try:
            added, deleted_count = self.provider.diff_stats(path, baseline)
            parsed = parse_unified_diff(self.provider.diff_regions(path, baseline))
        except DiffUnavailableError as e:
            logger.debug(f"{path}: missing and not diffable against {baseline}: {e}")
            return None

        if not (parsed.is_deleted_file or (added == 0 and deleted_count > 0)):
            return None

        logger.debug(f"{path}: deleted since {baseline}")
        return self._finish(
            file_path=path,
            file_category=category,
            deleted_lines=deleted_count,
            change_ratio=1.0,
            is_deleted=True,
        )

    def _degraded_analysis(
        self,
        path: str,
        category: FileCategory,
        line_count: int,
        reason: str,
    ) -> ChangeAnalysis:
        return ChangeAnalysis(
            file_path=path,
            baseline=self.config.baseline,
            file_line_count=line_count,
            change_ratio=1.0,
            file_category=category,
            chosen_strategy=Strategy.FULL_FILE,
            estimated_tokens=estimate_tokens(Strategy.FULL_FILE, line_count, self.config.max_tokens_per_file),
            degraded_reason=reason,
        )

    def _finish(self, **facts) -> ChangeAnalysis:
        regions: List[ChangeRegion] = facts.pop("regions", [])
        draft = ChangeAnalysis(
            baseline=self.config.baseline,
            region_count=len(regions),
            max_region_size=max((r.size for r in regions), default=0),
            regions=regions,
            **facts,
        )
        strategy = select_strategy(draft)
        return draft.model_copy(
            update={
                "chosen_strategy": strategy,
                "estimated_tokens": estimate_tokens(
                    strategy, draft.file_line_count, self.config.max_tokens_per_file
                ),
            }
        )
