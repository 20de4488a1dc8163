#!/usr/bin/env python3
"""
MIB Text Sanitizer
Repairs common real-world defects in vendor MIB files so the compiler can
accept them. Applied only after the raw file failed to load.
"""

import re
import uuid
from pathlib import Path
from typing import List, Tuple

from core.exceptions import SanitizationError
from utils.logger import get_logger

logger = get_logger(__name__)

INT32_MAX = 2147483647

DEFINITION_RE = re.compile(r"^\s*[A-Za-z][\w-]*\s*::=")

# (name, pattern, replacement) applied in order
TEXT_FIXES: List[Tuple[str, "re.Pattern", object]] = [
    (
        "max_bound",
        re.compile(r"(\d+)?\s*\.\.\s*MAX\b"),
        lambda m: f"{m.group(1)}..{INT32_MAX}" if m.group(1) else m.group(0).replace("MAX", str(INT32_MAX)),
    ),
    (
        "integer_overflow",
        re.compile(r"INTEGER\s*\(\s*(-?\d+)\s*\.\.\s*2147483648\s*\)"),
        lambda m: f"INTEGER ({m.group(1)}..{INT32_MAX})",
    ),
    (
        "lowercase_size",
        re.compile(r"\(\s*size\s+\("),
        lambda m: "(SIZE (",
    ),
    (
        "hex_leading_zero",
        re.compile(r"'0([0-9a-fA-F]+)'[hH]"),
        lambda m: f"'{m.group(1)}'h",
    ),
    (
        "last_updated_seconds",
        re.compile(r'LAST-UPDATED\s+"(\d{12})\d{2}(Z)"'),
        lambda m: f'LAST-UPDATED "{m.group(1)}{m.group(2)}"',
    ),
]


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _take_block(lines: List[str], start: int) -> Tuple[List[str], int]:
    """Collect a '::=' definition starting at `start`; return it and the next index."""
    block = []
    depth = 0
    seen_brace = False
    i = start
    while i < len(lines):
        line = lines[i]
        if i > start and not line.strip() and not (seen_brace and depth > 0):
            break
        block.append(line)
        depth += line.count("{") - line.count("}")
        seen_brace = seen_brace or "{" in line
        i += 1
        if seen_brace and depth <= 0:
            break
    return block, i


def fix_trailing_definitions(text: str) -> str:
    """
    Move type definitions that trail the closing END back inside the module.

    Some vendor files (RFC1212-style IndexSyntax blocks are the classic case)
    put a `Xyz ::= ...` block after END, which the compiler rejects.
    """
    lines = text.split("\n")

    end_idx = None
    for i in range(len(lines) - 1, -1, -1):
        if lines[i].strip() == "END":
            end_idx = i
            break
    if end_idx is None:
        return text

    trailing = lines[end_idx + 1:]
    moved: List[str] = []
    kept: List[str] = []
    i = 0
    while i < len(trailing):
        if DEFINITION_RE.match(trailing[i]):
            block, i = _take_block(trailing, i)
            if moved:
                moved.append("")
            moved.extend(block)
        else:
            kept.append(trailing[i])
            i += 1

    if not moved:
        return text

    head = lines[:end_idx]
    while head and not head[-1].strip():
        head.pop()

    logger.debug(f"Moved {len(moved)} trailing definition line(s) before END")
    return "\n".join(head + [""] + moved + ["", lines[end_idx]] + kept)


def sanitize_text(text: str) -> str:
    """Apply every structural and text-level fix to MIB source text."""
    text = text.lstrip("\ufeff\ufffe")
    text = normalize_line_endings(text)
    text = fix_trailing_definitions(text)

    for name, pattern, replacement in TEXT_FIXES:
        text, count = pattern.subn(replacement, text)
        if count:
            logger.debug(f"Sanitizer fix '{name}' applied {count} time(s)")

    return text


def sanitized_filename(source: Path) -> str:
    """Collision-proof name for a sanitized copy of `source`."""
    return f"_sanitized_{uuid.uuid4().hex[:8]}_{source.name}"


def write_sanitized_copy(source: Path, scratch_dir: Path) -> Path:
    """
    Write a sanitized copy of `source` into `scratch_dir`.

    The caller's file is never touched. Raises SanitizationError when the
    source cannot be read or the scratch directory is not writable.
    """
    source = Path(source)
    scratch_dir = Path(scratch_dir)

    try:
        text = source.read_text(encoding="utf-8", errors="ignore")
    except OSError as e:
        raise SanitizationError(f"cannot read {source}: {e}") from e

    fixed = sanitize_text(text)

    try:
        scratch_dir.mkdir(parents=True, exist_ok=True)
        target = scratch_dir / sanitized_filename(source)
        target.write_text(fixed, encoding="utf-8")
    except OSError as e:
        raise SanitizationError(f"cannot write sanitized copy to {scratch_dir}: {e}") from e

    logger.info(f"Sanitized copy written: {target.name}")
    return target
