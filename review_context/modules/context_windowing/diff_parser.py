"""
Diff Parser for Change-Aware Context Windowing.

Turns the unified diff of a single file into ordered change regions,
the foundation layer that identifies WHAT changed.

Parsing is total: malformed or empty input yields an empty region list,
which callers read as "the whole file changed".
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..schemas import ChangeKind, ChangeRegion


HUNK_HEADER = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@')
NEW_FILE_MODE = re.compile(r'^new file mode')
DELETED_FILE_MODE = re.compile(r'^deleted file mode')
BINARY_MARKER = re.compile(r'^Binary files .* differ$')


@dataclass
class ParsedDiff:
    """Everything the analyzer needs from one file's diff."""
    regions: List[ChangeRegion] = field(default_factory=list)
    added_lines: int = 0
    deleted_lines: int = 0
    added_text: List[str] = field(default_factory=list)    # without '+' prefix
    removed_text: List[str] = field(default_factory=list)  # without '-' prefix
    is_new_file: bool = False
    is_deleted_file: bool = False
    is_binary: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.regions and not self.is_binary


class _RegionBuilder:
    """Accumulates one hunk; tracks the new-file line counter."""

    def __init__(self, start_line: int, old_count: int, new_count: int):
        self.start_line = max(1, start_line)
        self.next_line = self.start_line
        self.old_remaining = old_count
        self.new_remaining = new_count
        self.saw_addition = False
        self.saw_deletion = False
        self.first_changed: Optional[int] = None
        self.last_changed: Optional[int] = None

    @property
    def exhausted(self) -> bool:
        return self.old_remaining <= 0 and self.new_remaining <= 0

    def _mark(self, line_number: int) -> None:
        if self.first_changed is None:
            self.first_changed = line_number
        self.last_changed = line_number

    def add(self) -> None:
        self.saw_addition = True
        self._mark(self.next_line)
        self.next_line += 1
        self.new_remaining -= 1

    def delete(self) -> None:
        # A removed line sits just before the next new-file line.
        self.saw_deletion = True
        self._mark(self.next_line)
        self.old_remaining -= 1

    def context(self) -> None:
        self.next_line += 1
        self.old_remaining -= 1
        self.new_remaining -= 1

    def build(self) -> ChangeRegion:
        end_line = max(self.start_line, self.next_line - 1)
        if self.saw_addition and self.saw_deletion:
            kind = ChangeKind.MODIFICATION
        elif self.saw_addition:
            kind = ChangeKind.ADDITION
        elif self.saw_deletion:
            kind = ChangeKind.DELETION
        else:
            kind = ChangeKind.MODIFICATION

        changed_start = changed_end = None
        if self.first_changed is not None:
            changed_start = min(max(self.first_changed, self.start_line), end_line)
            changed_end = min(max(self.last_changed, changed_start), end_line)
        return ChangeRegion(
            start_line=self.start_line,
            end_line=end_line,
            size=end_line - self.start_line + 1,
            kind=kind,
            changed_start=changed_start,
            changed_end=changed_end,
        )


def parse_unified_diff(diff_text: Optional[str]) -> ParsedDiff:
    """Parse unified diff text for one file.

    Header counts are tracked so that a removed line starting with "--"
    inside a hunk is read as content, not as a "--- a/file" header.
    """
    result = ParsedDiff()
    if not diff_text or not diff_text.strip():
        return result

    current: Optional[_RegionBuilder] = None

    for line in diff_text.splitlines():
        hunk_match = HUNK_HEADER.match(line)
        if hunk_match:
            if current is not None:
                result.regions.append(current.build())
            current = _RegionBuilder(
                start_line=int(hunk_match.group(3)),
                old_count=int(hunk_match.group(2) or 1),
                new_count=int(hunk_match.group(4) or 1),
            )
            continue

        if current is None or current.exhausted:
            # File header territory: before the first hunk or between files.
            if NEW_FILE_MODE.match(line):
                result.is_new_file = True
            elif DELETED_FILE_MODE.match(line):
                result.is_deleted_file = True
            elif BINARY_MARKER.match(line):
                result.is_binary = True
            continue

        if line.startswith('\\'):
            # "\ No newline at end of file"
            continue
        if line.startswith('+'):
            current.add()
            result.added_lines += 1
            result.added_text.append(line[1:])
        elif line.startswith('-'):
            current.delete()
            result.deleted_lines += 1
            result.removed_text.append(line[1:])
        else:
            current.context()

    if current is not None:
        result.regions.append(current.build())

    return result


def parse_diff_regions(diff_text: Optional[str]) -> List[ChangeRegion]:
    """Ordered change regions of a single-file unified diff."""
    return parse_unified_diff(diff_text).regions


def merge_line_ranges(
    ranges: List[Tuple[int, int]],
    gap_tolerance: int = 0
) -> List[Tuple[int, int]]:
    """
    Merge overlapping or adjacent line ranges.

    Args:
        ranges: List of (start, end) tuples, inclusive
        gap_tolerance: Merge ranges within this many lines of each other

    Returns:
        Sorted, merged list of (start, end) tuples
    """
    if not ranges:
        return []

    sorted_ranges = sorted(ranges, key=lambda r: r[0])
    merged = [sorted_ranges[0]]

    for start, end in sorted_ranges[1:]:
        prev_start, prev_end = merged[-1]
        if start <= prev_end + gap_tolerance + 1:
            merged[-1] = (prev_start, max(prev_end, end))
        else:
            merged.append((start, end))

    return merged
