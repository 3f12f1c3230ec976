"""Version-control provider for the context pipeline.

Supplies per-file diff statistics, raw diff text and file contents:
- numstat via `git diff --numstat <baseline> -- <path>`
- raw hunks via `git diff <baseline> -- <path>`
- changed-file listing via GitPython (baseline diff + untracked files)

Missing baselines are reported as NoBaselineError so callers can treat
the file as entirely new; every other git failure is DiffUnavailableError.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Set, Tuple

from loguru import logger

from .errors import DiffUnavailableError, FileUnreadableError, NoBaselineError


class VersionControl(Protocol):
    def diff_stats(self, path: str, baseline: str) -> Tuple[int, int]: ...

    def diff_regions(self, path: str, baseline: str) -> str: ...

    def read_file(self, path: str) -> bytes: ...

    def mtime_ns(self, path: str) -> Optional[int]: ...

    def changed_files(self, baseline: str) -> List[str]: ...

    def resolve_baseline(self, baseline: str) -> Optional[str]: ...


class GitProvider:
    """
    Git-backed implementation of the VersionControl protocol.

    Usage:
        provider = GitProvider("/path/to/repo")
        added, deleted = provider.diff_stats("src/app.ts", "HEAD~1")
        diff_text = provider.diff_regions("src/app.ts", "HEAD~1")
    """

    def __init__(self, repo_path: str = ".", timeout_s: float = 30.0):
        self.repo_path = Path(repo_path).resolve()
        self.timeout_s = timeout_s

    def _run_git(self, *args: str) -> Tuple[bool, str]:
        """Run a git command and return (success, output or error text)."""
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(self.repo_path),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired:
            return False, "Git command timed out"
        except FileNotFoundError:
            return False, "Git not found"
        except OSError as e:
            return False, str(e)

        if result.returncode != 0:
            return False, (result.stderr or "").strip()
        return True, result.stdout or ""

    def _abs(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.repo_path / candidate
        return candidate

    def _rel(self, path: str) -> str:
        candidate = self._abs(path)
        try:
            return candidate.resolve().relative_to(self.repo_path).as_posix()
        except ValueError:
            return Path(path).as_posix()

    def resolve_baseline(self, baseline: str) -> Optional[str]:
        """Commit id `baseline` currently points at, or None when it does not exist."""
        ok, output = self._run_git("rev-parse", "--verify", "--quiet", f"{baseline}^{{commit}}")
        sha = output.strip()
        return sha if ok and sha else None

    def has_baseline(self, baseline: str) -> bool:
        return self.resolve_baseline(baseline) is not None

    def _ensure_in_baseline(self, rel: str, baseline: str) -> None:
        if not self.has_baseline(baseline):
            raise NoBaselineError(f"Baseline {baseline} does not exist", path=rel)
        ok, _ = self._run_git("cat-file", "-e", f"{baseline}:{rel}")
        if not ok:
            raise NoBaselineError(f"{rel} is not present in {baseline}", path=rel)

    def diff_stats(self, path: str, baseline: str) -> Tuple[int, int]:
        """Return (added, deleted) line counts of `path` against `baseline`."""
        rel = self._rel(path)
        self._ensure_in_baseline(rel, baseline)

        ok, output = self._run_git("diff", "--numstat", baseline, "--", rel)
        if not ok:
            raise DiffUnavailableError(f"git diff --numstat failed: {output}", path=rel)

        added = deleted = 0
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 3:
                continue
            if parts[0] == "-" or parts[1] == "-":
                raise DiffUnavailableError("Binary file has no line statistics", path=rel)
            try:
                added += int(parts[0])
                deleted += int(parts[1])
            except ValueError:
                continue
        return added, deleted

    def diff_regions(self, path: str, baseline: str) -> str:
        """Return the raw unified diff of `path` against `baseline`."""
        rel = self._rel(path)
        self._ensure_in_baseline(rel, baseline)

        ok, output = self._run_git("diff", baseline, "--", rel)
        if not ok:
            raise DiffUnavailableError(f"git diff failed: {output}", path=rel)
        return output

    def read_file(self, path: str) -> bytes:
        target = self._abs(path)
        try:
            return target.read_bytes()
        except OSError as e:
            raise FileUnreadableError(f"Cannot read {path}: {e}", path=path) from e

    def mtime_ns(self, path: str) -> Optional[int]:
        try:
            return self._abs(path).stat().st_mtime_ns
        except OSError:
            return None

    def changed_files(self, baseline: str) -> List[str]:
        """Files changed against `baseline` plus untracked files.

        Without a baseline (initial commit) every tracked file counts as changed.
        """
        try:
            from git import Repo  # GitPython
            from git.exc import GitError

            repo = Repo(str(self.repo_path))
        except Exception as e:
            logger.warning(f"GitPython unavailable for {self.repo_path}: {e}")
            return []

        changed: Set[str] = set()
        try:
            if self.has_baseline(baseline):
                names = repo.git.diff("--name-only", baseline)
            else:
                names = repo.git.ls_tree("-r", "--name-only", "HEAD")
            changed.update(n.strip() for n in names.splitlines() if n.strip())
            changed.update(repo.untracked_files)
        except GitError as e:
            logger.warning(f"Changed-file detection failed against {baseline}: {e}")

        return sorted(p.replace("\\", "/") for p in changed)
