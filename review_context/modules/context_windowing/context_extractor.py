"""
Context Extractor for Change-Aware Context Windowing.

Five extraction algorithms, one per Strategy, sharing a single input
contract (ExtractionRequest). Block detection is heuristic: regex anchors
find declarations, brace depth (over text with strings and comments
masked) or indentation finds where they end. This trades precision for
cost; it is not a parser.

Extraction never raises for valid input. Boundary failures degrade
AffectedBlocks to ContextWindow; anything else degrades to FullFile.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger

from ..errors import BoundaryDetectionError
from ..schemas import ChangeRegion, ContextConfig, ExtractedContext, Strategy
from .diff_parser import merge_line_ranges
from .strategy_selector import estimate_text_tokens


_MODIFIERS = r'(?:(?:export|default|declare|abstract|public|private|protected|internal|static|final|sealed|partial|const)\s+)*'

DECLARATION_PATTERNS = [
    # function name(...) / export default async function
    re.compile(r'^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\b'),
    # class / interface / enum / type alias
    re.compile(r'^\s*' + _MODIFIERS + r'class\s+\w'),
    re.compile(r'^\s*' + _MODIFIERS + r'interface\s+\w'),
    re.compile(r'^\s*' + _MODIFIERS + r'enum\s+\w'),
    re.compile(r'^\s*(?:export\s+)?type\s+\w+'),
    # const name = (...) => / const name = function / const name = async x =>
    re.compile(r'^\s*(?:export\s+)?(?:const|let|var)\s+\w+\s*(?::[^=]+)?=\s*(?:async\s*)?(?:\(|function\b|\w+\s*=>)'),
    # Python def / class
    re.compile(r'^\s*(?:async\s+)?def\s+\w+'),
    # Go func, Rust fn / impl / trait
    re.compile(r'^\s*func\s+'),
    re.compile(r'^\s*(?:pub(?:\([\w:]+\))?\s+)?(?:async\s+)?(?:fn|impl|trait|struct|mod)\b'),
    # Java / C# / TS members: modifiers + name(...)
    re.compile(
        r'^\s*(?:(?:public|private|protected|internal|static|final|abstract|override|virtual|async|readonly)\s+)+'
        r'[\w<>\[\],.?\s]*?\w+\s*\('
    ),
    # Bare method inside a class body: name(...) {  (control keywords excluded)
    re.compile(
        r'^\s+(?:async\s+)?(?!(?:if|for|while|switch|catch|return|else|do|with|function|new|typeof)\b)'
        r'\w+\s*\([^)]*\)\s*(?::\s*[^{=]+)?\{'
    ),
]

HEADER_PATTERNS = [
    re.compile(r'^import\b'),
    re.compile(r'^from\s+\S+\s+import\b'),
    re.compile(r'^export\s+.*\bfrom\b'),
    re.compile(r'^export\s+(?:type|interface)\s+'),
    re.compile(r'^(?:type\s+\w+.*=|interface\s+\w+)'),
    re.compile(r'^(?:package|using|use)\s+'),
    re.compile(r'^(?:const|let|var)\s+\w+\s*=\s*require\('),
    re.compile(r'''^['"]use strict['"]'''),
]

_HASH_COMMENT_EXTS = {".py", ".pyi", ".rb", ".sh", ".bash", ".pl", ".r", ".yaml", ".yml", ".toml"}
_INDENT_BLOCK_EXTS = {".py", ".pyi"}


@dataclass(frozen=True)
class ExtractionRequest:
    """Input shared by every extractor."""
    file_path: str
    content: str
    regions: Sequence[ChangeRegion] = ()
    diff_text: str = ""
    config: ContextConfig = field(default_factory=ContextConfig)

    @property
    def lines(self) -> List[str]:
        return self.content.splitlines()


def render_line(line_number: int, text: str, marker: str = "") -> str:
    return f"{marker}{line_number:>4}: {text}"


# =============================================================================
# Shared helpers
# =============================================================================


def _usable_regions(regions: Sequence[ChangeRegion], line_count: int) -> List[ChangeRegion]:
    return [r for r in regions if r.start_line <= line_count]


def _window_ranges(
    regions: Sequence[ChangeRegion],
    window: int,
    line_count: int,
) -> List[Tuple[int, int]]:
    ranges: List[Tuple[int, int]] = []
    for region in regions:
        start = max(1, region.start_line - window)
        end = min(line_count, region.end_line + window)
        if start <= end:
            ranges.append((start, end))
    return merge_line_ranges(ranges)


def _render_ranges(lines: List[str], ranges: List[Tuple[int, int]]) -> List[str]:
    """Numbered lines for each range, with '...' wherever lines are skipped."""
    out: List[str] = []
    prev_end = 0
    for start, end in ranges:
        if start > prev_end + 1:
            out.append("...")
        for n in range(start, end + 1):
            out.append(render_line(n, lines[n - 1]))
        prev_end = end
    if ranges and prev_end < len(lines):
        out.append("...")
    return out


def find_header_end(lines: List[str], max_lines: int = 30) -> int:
    """Number of leading lines that form the file header (imports, comments, types).

    Stops at the first line that is neither blank, a comment, nor a header
    declaration. Multi-line imports and a leading docstring are kept whole.
    """
    header_end = 0
    open_import = False
    in_docstring: Optional[str] = None

    for i, raw in enumerate(lines[:max_lines]):
        line = raw.strip()

        if in_docstring:
            header_end = i + 1
            if in_docstring in line:
                in_docstring = None
            continue

        if open_import:
            header_end = i + 1
            if ')' in line or '}' in line or line.endswith(';'):
                open_import = False
            continue

        if not line or line.startswith(('//', '/*', '*', '#')):
            header_end = i + 1
            continue

        if line.startswith(('"""', "'''")):
            quote = line[:3]
            header_end = i + 1
            if line.count(quote) == 1:
                in_docstring = quote
            continue

        if any(p.match(line) for p in HEADER_PATTERNS):
            header_end = i + 1
            if re.search(r'[({]\s*$', line):
                open_import = True
            continue

        break

    return header_end


def mask_code(content: str, file_path: str = "") -> List[str]:
    """Blank out string literals and comments, preserving line and column offsets."""
    line_comment = "#" if Path(file_path).suffix.lower() in _HASH_COMMENT_EXTS else "//"
    chars = list(content)
    length = len(content)
    i = 0
    state: Optional[str] = None  # None | "line" | "block" | string delimiter

    while i < length:
        ch = content[i]
        if state is None:
            if content.startswith(line_comment, i):
                state = "line"
            elif line_comment == "//" and content.startswith("/*", i):
                chars[i] = chars[i + 1] = " "
                state = "block"
                i += 2
                continue
            elif content.startswith(('"""', "'''"), i):
                state = content[i:i + 3]
                chars[i] = chars[i + 1] = chars[i + 2] = " "
                i += 3
                continue
            elif ch in ("'", '"', "`"):
                state = ch
                chars[i] = " "
                i += 1
                continue
            else:
                i += 1
                continue

        if state == "line":
            if ch == "\n":
                state = None
            else:
                chars[i] = " "
            i += 1
        elif state == "block":
            if content.startswith("*/", i):
                chars[i] = chars[i + 1] = " "
                state = None
                i += 2
            else:
                if ch != "\n":
                    chars[i] = " "
                i += 1
        else:
            if ch == "\\" and i + 1 < length:
                chars[i] = " "
                if content[i + 1] != "\n":
                    chars[i + 1] = " "
                i += 2
                continue
            if content.startswith(state, i):
                for k in range(len(state)):
                    chars[i + k] = " "
                i += len(state)
                state = None
                continue
            if ch == "\n" and state in ("'", '"'):
                # Unterminated single-line string.
                state = None
            elif ch != "\n":
                chars[i] = " "
            i += 1

    return "".join(chars).splitlines()


def is_declaration(line: str) -> bool:
    return any(p.match(line) for p in DECLARATION_PATTERNS)


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip())


def _indent_block_end(lines: List[str], decl_idx: int) -> Optional[int]:
    """Last line (0-based) of a colon-terminated block, by indentation.

    Returns None for one-line declarations with no indented body.
    """
    base = _indent_of(lines[decl_idx])

    # Signature spanning several lines: skip to where its parentheses balance.
    sig_end = decl_idx
    depth = lines[decl_idx].count('(') - lines[decl_idx].count(')')
    while depth > 0 and sig_end + 1 < len(lines):
        sig_end += 1
        depth += lines[sig_end].count('(') - lines[sig_end].count(')')

    end: Optional[int] = None
    for j in range(sig_end + 1, len(lines)):
        line = lines[j]
        if not line.strip():
            continue
        if _indent_of(line) <= base:
            break
        end = j
    return end


def _brace_block_end(masked: List[str], decl_idx: int, file_path: str) -> Optional[int]:
    """Last line (0-based) of the brace block opened at or after decl_idx.

    Returns None when the declaration has no body (e.g. `type X = Y;`).
    Raises BoundaryDetectionError when the block never closes.
    """
    depth = 0
    opened = False
    for j in range(decl_idx, len(masked)):
        line = masked[j]
        for ch in line:
            if ch == '{':
                depth += 1
                opened = True
            elif ch == '}' and opened:
                depth -= 1
                if depth == 0:
                    return j
        if not opened and line.rstrip().endswith(';'):
            return None
    if opened:
        raise BoundaryDetectionError(
            f"Unbalanced braces after line {decl_idx + 1}", path=file_path
        )
    return None


def find_enclosing_block(
    lines: List[str],
    masked: List[str],
    region: ChangeRegion,
    file_path: str = "",
    block_ends: Optional[Dict[int, Optional[int]]] = None,
) -> Optional[Tuple[int, int]]:
    """1-indexed (start, end) of the nearest declaration block holding the first changed line of `region`.

    Context lines of the hunk are ignored: a block that only reaches into
    the leading context does not enclose the change.
    """
    if block_ends is None:
        block_ends = {}
    first_changed = min(region.changed_span[0], len(lines))
    indent_based = Path(file_path).suffix.lower() in _INDENT_BLOCK_EXTS

    for decl_idx in range(first_changed - 1, -1, -1):
        if not is_declaration(lines[decl_idx]):
            continue
        if decl_idx not in block_ends:
            if indent_based or lines[decl_idx].rstrip().endswith(':'):
                block_ends[decl_idx] = _indent_block_end(lines, decl_idx)
            else:
                block_ends[decl_idx] = _brace_block_end(masked, decl_idx, file_path)
        end_idx = block_ends[decl_idx]
        if end_idx is not None and end_idx >= first_changed - 1:
            return decl_idx + 1, end_idx + 1

    return None


def _blocks_for_region(
    lines: List[str],
    masked: List[str],
    region: ChangeRegion,
    file_path: str,
    block_ends: Dict[int, Optional[int]],
) -> Tuple[List[Tuple[int, int]], List[ChangeRegion]]:
    """Blocks covering the changed lines of `region`, plus the changed spans no block covers."""
    first, last = region.changed_span
    last = min(last, len(lines))
    blocks: List[Tuple[int, int]] = []

    while first <= last:
        remaining = ChangeRegion(start_line=first, end_line=last, size=last - first + 1, kind=region.kind)
        block = find_enclosing_block(lines, masked, remaining, file_path, block_ends)
        if block is None:
            return blocks, [remaining]
        blocks.append(block)
        first = block[1] + 1

    return blocks, []


# =============================================================================
# Extractors
# =============================================================================


def _extract_diff_only(request: ExtractionRequest) -> str:
    if not request.diff_text.strip():
        return f"No changes in {request.file_path}"
    return f"File changes: {request.file_path}\n\n{request.diff_text.rstrip()}"


def _extract_context_window(request: ExtractionRequest) -> str:
    lines = request.lines
    ranges = _window_ranges(request.regions, request.config.context_window_lines, len(lines))
    out = [f"File: {request.file_path}", ""]
    out.extend(_render_ranges(lines, ranges))
    return "\n".join(out)


def _extract_affected_blocks(request: ExtractionRequest) -> str:
    lines = request.lines
    masked = mask_code(request.content, request.file_path)
    block_ends: Dict[int, Optional[int]] = {}
    window = request.config.context_window_lines

    blocks: List[Tuple[int, int]] = []
    loose: List[ChangeRegion] = []
    for region in request.regions:
        found, uncovered = _blocks_for_region(lines, masked, region, request.file_path, block_ends)
        blocks.extend(found)
        loose.extend(uncovered)

    if not blocks:
        raise BoundaryDetectionError("No enclosing declaration found", path=request.file_path)

    header_end = find_header_end(lines, request.config.summary_header_lines)
    ranges = merge_line_ranges(blocks + _window_ranges(loose, window, len(lines)))

    out = [f"File: {request.file_path}", ""]
    if header_end > 0:
        out.append("// File header")
        out.extend(render_line(n, lines[n - 1]) for n in range(1, header_end + 1))
        out.append("")

    out.append("// Affected blocks")
    for start, end in ranges:
        start = max(start, header_end + 1)
        if start > end:
            continue
        out.append("")
        out.extend(render_line(n, lines[n - 1]) for n in range(start, end + 1))

    return "\n".join(out)


def _extract_smart_summary(request: ExtractionRequest) -> str:
    config = request.config
    lines = request.lines
    regions = list(request.regions)

    out = [f"File: {request.file_path}", ""]

    header_end = find_header_end(lines, config.summary_header_lines)
    if header_end > 0:
        out.append("// === File header ===")
        out.extend(render_line(n, lines[n - 1]) for n in range(1, header_end + 1))
        out.append("")

    out.append("// === Change summary ===")
    out.append(f"{len(regions)} change regions:")
    for index, region in enumerate(regions, 1):
        out.append(f"{index}. lines {region.start_line}-{region.end_line} ({region.kind.value})")
    out.append("")

    largest = sorted(regions, key=lambda r: -r.size)[:config.summary_top_regions]
    if largest:
        out.append("// === Key changes ===")
    for region in sorted(largest, key=lambda r: r.start_line):
        out.append(f"Region {region.start_line}-{region.end_line} ({region.kind.value}):")
        start = max(1, region.start_line - config.summary_window_lines)
        end = min(len(lines), region.end_line + config.summary_window_lines)
        shown_end = min(end, start + config.summary_region_line_limit - 1)
        for n in range(start, shown_end + 1):
            marker = ">" if region.start_line <= n <= region.end_line else " "
            out.append(render_line(n, lines[n - 1], marker))
        if shown_end < end:
            out.append(f"  ... {end - shown_end} more lines")
        out.append("")

    return "\n".join(out).rstrip("\n")


# =============================================================================
# Dispatch
# =============================================================================


def _run_strategy(strategy: Strategy, request: ExtractionRequest) -> Tuple[str, Strategy]:
    if strategy == Strategy.FULL_FILE:
        return request.content, Strategy.FULL_FILE

    if strategy == Strategy.DIFF_ONLY:
        return _extract_diff_only(request), Strategy.DIFF_ONLY

    line_count = len(request.lines)
    if not _usable_regions(request.regions, line_count):
        # No regions: the whole file counts as changed.
        logger.debug(f"{request.file_path}: no change regions, using full file")
        return request.content, Strategy.FULL_FILE

    try:
        if strategy == Strategy.CONTEXT_WINDOW:
            return _extract_context_window(request), Strategy.CONTEXT_WINDOW

        if strategy == Strategy.AFFECTED_BLOCKS:
            try:
                return _extract_affected_blocks(request), Strategy.AFFECTED_BLOCKS
            except BoundaryDetectionError as e:
                logger.warning(f"{request.file_path}: {e}; falling back to context_window")
                return _extract_context_window(request), Strategy.CONTEXT_WINDOW

        if strategy == Strategy.SMART_SUMMARY:
            return _extract_smart_summary(request), Strategy.SMART_SUMMARY
    except Exception as e:
        logger.warning(f"{request.file_path}: {strategy.value} extraction failed ({e}); falling back to full_file")
        return request.content, Strategy.FULL_FILE

    raise ValueError(f"Unknown strategy: {strategy}")


def extract_context(strategy: Strategy, request: ExtractionRequest) -> ExtractedContext:
    """Run the extractor for `strategy` and measure the result."""
    text, used = _run_strategy(strategy, request)

    original = len(request.lines)
    extracted = len(text.splitlines())
    return ExtractedContext(
        file_path=request.file_path,
        strategy=used,
        requested_strategy=strategy,
        text=text,
        original_line_count=original,
        extracted_line_count=extracted,
        compression_ratio=extracted / original if original > 0 else 1.0,
        estimated_tokens=estimate_text_tokens(text),
    )
