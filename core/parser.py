#!/usr/bin/env python3
"""
MIB Loader - Sanitizing Fallback Chain
Validates a MIB file, tries every plausible module name against the
compiler, and retries on a sanitized copy when the raw text is rejected.
Also converts compiler symbol records into storable Node records.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from core.compiler import SymbolRecord
from core.exceptions import AggregateLoadError, CompileAttemptError, SanitizationError, ValidationError
from core.models import Node, clean_description
from core.oid import canonical_key, parent_of
from core.sanitizer import write_sanitized_copy
from utils.logger import get_logger

logger = get_logger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
HEADER_PROBE_BYTES = 512
MIB_KEYWORDS = ("DEFINITIONS", "IMPORTS", "BEGIN")

# OIDs that compilers emit for placeholders rather than real nodes
PLACEHOLDER_OIDS = {"0", "0.0", "2"}

IMPORTS_RE = re.compile(r"\bIMPORTS\b(.*?);", re.DOTALL)
FROM_RE = re.compile(r"\bFROM\s+([A-Za-z][\w-]*)")


# ============= DATA CLASSES =============


@dataclass
class LoadAttempt:
    """One failed step of the fallback chain."""

    label: str
    candidate: str
    error: str


@dataclass
class LoadResult:
    """Outcome of a successful load."""

    module_name: str
    source_path: str
    imports: List[str] = field(default_factory=list)
    sanitized_path: Optional[str] = None
    attempts: List[LoadAttempt] = field(default_factory=list)

    @property
    def sanitized(self) -> bool:
        return self.sanitized_path is not None


@dataclass
class ConversionResult:
    nodes: List[Node] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=dict)


# ============================================
# FILE HELPERS
# ============================================


def validate_mib_file(path, max_size: int = MAX_FILE_SIZE) -> Path:
    """
    Check that `path` is a readable regular file of acceptable size.

    Files that do not look like MIB text only produce a warning.

    Raises:
        ValidationError: empty path, missing file, not a regular file, too large
    """
    if not path or not str(path).strip():
        raise ValidationError("empty file path")

    file_path = Path(path)
    if not file_path.exists():
        raise ValidationError(f"file not found: {file_path}")
    if not file_path.is_file():
        raise ValidationError(f"not a regular file: {file_path}")

    size = file_path.stat().st_size
    if size > max_size:
        raise ValidationError(
            f"file too large: {file_path} ({size} bytes, max {max_size})"
        )

    try:
        with open(file_path, "rb") as f:
            head = f.read(HEADER_PROBE_BYTES).decode("utf-8", errors="ignore").upper()
    except OSError as e:
        raise ValidationError(f"cannot read {file_path}: {e}") from e

    if not any(keyword in head for keyword in MIB_KEYWORDS):
        logger.warning(f"{file_path.name} does not look like a MIB file, trying anyway")

    return file_path


def read_mib_text(path) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        return f.read()


def extract_module_name(text: str) -> Optional[str]:
    """Module identifier from the first line that declares DEFINITIONS."""
    for line in text.splitlines():
        code = line.split("--", 1)[0]
        if "DEFINITIONS" in code.upper():
            tokens = code.split()
            if tokens:
                return tokens[0]
    return None


def extract_imports(text: str) -> List[str]:
    """Module names referenced by the IMPORTS clause, in order, de-duplicated."""
    # Comments can contain ';' which would cut the clause short
    code = "\n".join(line.split("--", 1)[0] for line in text.splitlines())
    match = IMPORTS_RE.search(code)
    if not match:
        return []

    modules: List[str] = []
    for name in FROM_RE.findall(match.group(1)):
        if name not in modules:
            modules.append(name)
    return modules


def build_candidates(path, text: str, first: Optional[str] = None) -> List[str]:
    """Ordered, unique module-name guesses for a MIB file."""
    file_path = Path(path)
    stem = file_path.stem
    basename = file_path.name

    raw = [first, extract_module_name(text), stem, stem.upper(), basename, basename.upper()]

    candidates: List[str] = []
    for name in raw:
        if name and name not in candidates:
            candidates.append(name)
    return candidates


# ============= LOADER =============


class MibLoader:
    """
    Drives the compiler through the raw and sanitized candidate lists.

    Stops at the first candidate that loads; every failure is kept so the
    final error can show the whole history.
    """

    def __init__(self, compiler, scratch_dir, max_file_size: int = MAX_FILE_SIZE):
        self.compiler = compiler
        self.scratch_dir = Path(scratch_dir)
        self.max_file_size = max_file_size
        self.logger = get_logger(self.__class__.__name__)

    def load(self, path) -> LoadResult:
        """
        Load a MIB file into the compiler.

        Raises:
            ValidationError: the file itself is unusable
            AggregateLoadError: every raw and sanitized candidate failed
        """
        file_path = validate_mib_file(path, self.max_file_size)
        self.compiler.add_search_path(str(file_path.parent))

        text = read_mib_text(file_path)
        attempts: List[LoadAttempt] = []

        candidates = build_candidates(file_path, text)
        self.logger.debug(f"Candidates for {file_path.name}: {candidates}")

        loaded = self._try_candidates(candidates, "raw", attempts)
        if loaded:
            return LoadResult(
                module_name=loaded,
                source_path=str(file_path),
                imports=extract_imports(text),
                attempts=attempts,
            )

        self.logger.info(f"Raw load of {file_path.name} failed, retrying on sanitized copy")

        try:
            sanitized_path = write_sanitized_copy(file_path, self.scratch_dir)
        except SanitizationError as e:
            attempts.append(LoadAttempt("sanitize", "", str(e)))
            raise AggregateLoadError(str(file_path), attempts) from e

        self.compiler.add_search_path(str(sanitized_path.parent))
        sanitized_text = read_mib_text(sanitized_path)
        sanitized_candidates = build_candidates(
            sanitized_path, sanitized_text, first=sanitized_path.stem
        )

        loaded = self._try_candidates(sanitized_candidates, "sanitized", attempts)
        if loaded:
            self.logger.info(f"✅ Loaded {loaded} from sanitized copy {sanitized_path.name}")
            return LoadResult(
                module_name=loaded,
                source_path=str(file_path),
                imports=extract_imports(sanitized_text),
                sanitized_path=str(sanitized_path),
                attempts=attempts,
            )

        error = AggregateLoadError(str(file_path), attempts)
        self.logger.error(str(error))
        raise error

    def _try_candidates(self, candidates: List[str], label: str, attempts: List[LoadAttempt]) -> Optional[str]:
        for candidate in candidates:
            try:
                return self.compiler.load_module(candidate)
            except CompileAttemptError as e:
                attempts.append(LoadAttempt(f"{label}:{candidate}", candidate, e.reason))
                self.logger.debug(f"Candidate {candidate} ({label}) failed: {e.reason}")
        return None

    def cleanup_scratch(self) -> int:
        """Delete sanitized copies left in the scratch directory."""
        removed = 0
        if not self.scratch_dir.exists():
            return removed
        for entry in self.scratch_dir.glob("_sanitized_*"):
            try:
                entry.unlink()
                removed += 1
            except OSError as e:
                self.logger.warning(f"Failed to remove {entry}: {e}")
        return removed


# ============================================
# CONVERSION
# ============================================


def convert_symbols(records: List[SymbolRecord], seen: Optional[set] = None) -> ConversionResult:
    """
    Turn raw compiler records into Nodes.

    Records without a name are dropped silently, records without an OID are
    counted as skipped for their module, placeholder OIDs are ignored and
    the first record wins when an OID repeats.
    """
    result = ConversionResult()
    seen = set() if seen is None else seen

    for record in records:
        if not record.name:
            continue
        oid = canonical_key(record.oid)
        if not oid:
            result.skipped[record.module] = result.skipped.get(record.module, 0) + 1
            continue
        if oid in PLACEHOLDER_OIDS or oid in seen:
            continue
        seen.add(oid)

        result.nodes.append(
            Node(
                oid=oid,
                name=record.name,
                parent_oid=parent_of(oid),
                kind=record.kind,
                syntax=record.syntax,
                access=record.access,
                status=record.status,
                description=clean_description(record.description),
                module=record.module,
            )
        )

    return result

