"""In-memory version-control provider and diff builders for tests."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional, Sequence, Set, Tuple

from review_context.modules.errors import DiffUnavailableError, FileUnreadableError, NoBaselineError


def make_hunk(
    new_start: int,
    added: Sequence[str] = (),
    removed: Sequence[str] = (),
    context: Sequence[str] = ("    // context",),
) -> str:
    """One hunk: context, removed lines, added lines, context."""
    body = [" " + c for c in context]
    body += ["-" + r for r in removed]
    body += ["+" + a for a in added]
    body += [" " + c for c in context]
    old_count = 2 * len(context) + len(removed)
    new_count = 2 * len(context) + len(added)
    return "\n".join([f"@@ -{new_start},{old_count} +{new_start},{new_count} @@"] + body)


def make_diff(path: str, *hunks: str, header: Sequence[str] = ()) -> str:
    lines = [f"diff --git a/{path} b/{path}", *header, f"--- a/{path}", f"+++ b/{path}", *hunks]
    return "\n".join(lines) + "\n"


def numbered_lines(count: int, template: str = "    value_{n} = compute({n});") -> str:
    return "\n".join(template.format(n=n) for n in range(1, count + 1)) + ("\n" if count else "")


class FakeVcs:
    """
    VersionControl double backed by dicts.

    Usage:
        vcs = FakeVcs()
        vcs.add_file("src/a.ts", content, added=3, deleted=1, diff=diff_text)
        vcs.add_new_file("src/b.ts", content)
    """

    def __init__(self):
        self.files: Dict[str, str] = {}
        self.stats: Dict[str, Tuple[int, int]] = {}
        self.diffs: Dict[str, str] = {}
        self.mtimes: Dict[str, int] = {}
        self.no_baseline: Set[str] = set()
        self.broken: Dict[str, str] = {}
        self.changed: List[str] = []
        self.revisions: Dict[str, str] = {}
        self.calls: Counter = Counter()

    def add_file(
        self,
        path: str,
        content: str,
        *,
        added: int = 0,
        deleted: int = 0,
        diff: str = "",
        mtime: int = 1_700_000_000_000_000_000,
    ) -> None:
        self.files[path] = content
        self.stats[path] = (added, deleted)
        self.diffs[path] = diff
        self.mtimes[path] = mtime
        self.changed.append(path)

    def add_new_file(self, path: str, content: str) -> None:
        self.add_file(path, content)
        self.no_baseline.add(path)

    def add_deleted_file(self, path: str, deleted: int, diff: str) -> None:
        self.stats[path] = (0, deleted)
        self.diffs[path] = diff
        self.changed.append(path)

    def break_diff(self, path: str, reason: str = "binary file") -> None:
        self.broken[path] = reason

    def touch(self, path: str, content: Optional[str] = None) -> None:
        if content is not None:
            self.files[path] = content
        self.mtimes[path] += 1

    # VersionControl protocol

    def _check_diffable(self, path: str) -> None:
        if path in self.no_baseline:
            raise NoBaselineError(f"{path} is not present in baseline", path=path)
        if path in self.broken:
            raise DiffUnavailableError(self.broken[path], path=path)

    def diff_stats(self, path: str, baseline: str) -> Tuple[int, int]:
        self.calls["diff_stats"] += 1
        self._check_diffable(path)
        return self.stats.get(path, (0, 0))

    def diff_regions(self, path: str, baseline: str) -> str:
        self.calls["diff_regions"] += 1
        self._check_diffable(path)
        return self.diffs.get(path, "")

    def read_file(self, path: str) -> bytes:
        self.calls["read_file"] += 1
        if path not in self.files:
            raise FileUnreadableError(f"Cannot read {path}", path=path)
        return self.files[path].encode("utf-8")

    def mtime_ns(self, path: str) -> Optional[int]:
        return self.mtimes.get(path) if path in self.files else None

    def changed_files(self, baseline: str) -> List[str]:
        return list(self.changed)

    def resolve_baseline(self, baseline: str) -> Optional[str]:
        return self.revisions.get(baseline)
