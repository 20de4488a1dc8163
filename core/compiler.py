#!/usr/bin/env python3
"""
MIB Compiler Handle
Owns the pysmi compiler configuration and the pysnmp MibBuilder whose
symbol table is the process-wide registry of loaded modules.
"""

import inspect
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pyasn1.type.constraint import ValueRangeConstraint
from pysmi.codegen.pysnmp import PySnmpCodeGen
from pysmi.compiler import MibCompiler
from pysmi.parser.smi import parserFactory
from pysmi.reader.localfile import FileReader
from pysmi.searcher.pyfile import PyFileSearcher
from pysmi.searcher.stub import StubSearcher
from pysmi.writer.pyfile import PyFileWriter
from pysnmp.smi import builder

from core.exceptions import CompileAttemptError
from core.models import NodeKind, normalize_access, normalize_status
from utils.logger import get_logger


# SMI source texts shipped with the package; pysmi reads them to resolve
# imports of the stub modules below
STANDARD_MIB_DIR = Path(__file__).resolve().parent / "mibs"

# Modules pysnmp ships precompiled; never recompiled from text
STUB_MIBS = {
    "SNMPv2-SMI",
    "SNMPv2-TC",
    "SNMPv2-CONF",
    "SNMPv2-MIB",
    "RFC1155-SMI",
    "RFC1212",
    "RFC-1212",
    "RFC-1215",
    "RFC1213-MIB",
}

BASE_TYPES = {
    "Integer32",
    "Integer",
    "OctetString",
    "ObjectIdentifier",
    "IpAddress",
    "Counter32",
    "Counter64",
    "Gauge32",
    "TimeTicks",
    "Unsigned32",
    "Bits",
    "Opaque",
}

# pysnmp class name -> node kind, matched along the MRO
KIND_MAP = {
    "MibScalarInstance": None,
    "MibTableColumn": NodeKind.COLUMN,
    "MibTableRow": NodeKind.ROW,
    "MibTable": NodeKind.TABLE,
    "MibScalar": NodeKind.SCALAR,
    "NotificationType": NodeKind.NOTIFICATION,
    "NotificationGroup": NodeKind.GROUP,
    "ObjectGroup": NodeKind.GROUP,
    "ModuleCompliance": NodeKind.COMPLIANCE,
    "AgentCapabilities": NodeKind.COMPLIANCE,
    "ModuleIdentity": NodeKind.NODE,
    "ObjectIdentity": NodeKind.NODE,
    "MibIdentifier": NodeKind.NODE,
}

SUCCESS_STATUSES = ("compiled", "untouched", "borrowed")

IGNORED_SYMBOLS = {"PYSNMP_MODULE_ID"}


@dataclass
class SymbolRecord:
    """Raw node record as produced by the compiler, before conversion."""

    module: str
    name: str
    oid: str = ""
    kind: NodeKind = NodeKind.UNKNOWN
    syntax: str = ""
    access: str = ""
    status: str = ""
    description: str = ""


# ============================================
# SYNTAX RENDERING
# ============================================


def _range_leaves(spec) -> List[Tuple[int, int]]:
    """Flatten a pyasn1 constraint tree into (start, stop) pairs."""
    if spec is None:
        return []
    if isinstance(spec, ValueRangeConstraint):
        return [(spec.start, spec.stop)]
    try:
        children = list(spec)
    except TypeError:
        return []
    leaves = []
    for child in children:
        leaves.extend(_range_leaves(child))
    return leaves


def _base_class(syntax_cls):
    for cls in syntax_cls.__mro__[1:]:
        if cls.__name__ in BASE_TYPES:
            return cls
    return None


def render_syntax(syntax_obj) -> str:
    """
    Render a syntax object as text: `Type (a..b | c..d) {name(v), ...}`.

    Only ranges added on top of the base type are shown.
    """
    if syntax_obj is None:
        return ""

    syntax_cls = syntax_obj.__class__
    text = syntax_cls.__name__

    own = _range_leaves(getattr(syntax_obj, "subtypeSpec", None))
    base = _base_class(syntax_cls)
    inherited = set(_range_leaves(getattr(base, "subtypeSpec", None))) if base is not None else set()

    ranges = []
    for leaf in own:
        if leaf not in inherited and leaf not in ranges:
            ranges.append(leaf)
    if ranges:
        text += " (" + " | ".join(f"{lo}..{hi}" for lo, hi in ranges) + ")"

    named_values = getattr(syntax_obj, "namedValues", None)
    if named_values:
        items = sorted(dict(named_values).items(), key=lambda kv: kv[1])
        text += " {" + ", ".join(f"{name}({value})" for name, value in items) + "}"

    return text


def _kind_of(mib_node) -> Optional[NodeKind]:
    for cls in type(mib_node).__mro__:
        if cls.__name__ in KIND_MAP:
            return KIND_MAP[cls.__name__]
    return NodeKind.UNKNOWN if hasattr(mib_node, "getName") else None


# ============= COMPILER HANDLE =============


class CompilerHandle:
    """
    Wraps pysmi compilation and pysnmp module loading.

    The bundled standard MIB directory is always the first search path.
    The MibBuilder registry and the search-path list only grow; there is no
    way to unload a module or drop a path. Calls are serialized on an
    internal lock, and callers are expected to funnel loads through a single
    worker as well.
    """

    def __init__(self, compiled_dir: str, search_paths: Optional[List[str]] = None):
        self.logger = get_logger(self.__class__.__name__)
        self.compiled_dir = Path(compiled_dir)
        self.compiled_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self.search_paths: List[str] = []
        self.add_search_path(STANDARD_MIB_DIR)
        for path in search_paths or []:
            self.add_search_path(path)

        self.mib_builder = builder.MibBuilder()
        self.mib_builder.loadTexts = True
        self.mib_builder.add_mib_sources(
            builder.DirMibSource(str(self.compiled_dir)),
            builder.DirMibSource(os.path.join(os.path.dirname(builder.__file__), "mibs")),
        )

        self.stats = {"compile_attempts": 0, "compile_failures": 0, "modules_loaded": 0}

    def add_search_path(self, path) -> None:
        """Append a source directory (no-op when already registered)."""
        path = os.path.abspath(str(path))
        with self._lock:
            if path not in self.search_paths:
                self.search_paths.append(path)
                self.logger.debug(f"Added MIB search path: {path}")

    def _build_compiler(self) -> MibCompiler:
        codegen = PySnmpCodeGen()
        codegen.genTexts = True  # Descriptions are stored with each node

        compiler = MibCompiler(parserFactory()(), codegen, PyFileWriter(str(self.compiled_dir)))
        compiler.add_sources(*[FileReader(path) for path in self.search_paths])
        compiler.add_searchers(PyFileSearcher(str(self.compiled_dir)))
        compiler.add_searchers(StubSearcher(*STUB_MIBS))
        return compiler

    @staticmethod
    def _match_result(candidate: str, results) -> Tuple[Optional[str], Optional[str]]:
        """Find the compile result that belongs to `candidate`."""
        if not results:
            return None, None
        if candidate in results:
            return candidate, results[candidate]
        for name, status in results.items():
            if getattr(status, "alias", None) == candidate:
                return name, status
        return None, None

    def load_module(self, candidate: str) -> str:
        """
        Compile `candidate` from the search paths and load it into the builder.

        Returns:
            The module name the builder registered

        Raises:
            CompileAttemptError: the candidate could not be compiled or loaded
        """
        with self._lock:
            self.stats["compile_attempts"] += 1

            try:
                compiler = self._build_compiler()
                results = compiler.compile(candidate, ignoreErrors=True, genTexts=True)
            except Exception as e:
                self.stats["compile_failures"] += 1
                raise CompileAttemptError(candidate, f"compiler error: {e}") from e

            name, status = self._match_result(candidate, results)
            if name is None or status not in SUCCESS_STATUSES:
                self.stats["compile_failures"] += 1
                raise CompileAttemptError(candidate, self._describe_failure(status, results))

            try:
                self.mib_builder.load_modules(name)
            except Exception as e:
                self.stats["compile_failures"] += 1
                raise CompileAttemptError(candidate, f"load error: {e}") from e

            self.stats["modules_loaded"] += 1
            self.logger.debug(f"Loaded {name} (candidate {candidate}, status {status})")
            return name

    @staticmethod
    def _describe_failure(status, results) -> str:
        if status is not None:
            error = getattr(status, "error", None)
            return f"{status}: {error}" if error else str(status)
        if not results:
            return "no compile result"
        failures = [f"{name}={status}" for name, status in results.items() if status not in SUCCESS_STATUSES]
        return "no matching module; " + (", ".join(failures) or "unrelated results")

    def load_builtin(self, name: str) -> bool:
        """Load a module pysnmp already ships or that is compiled; False on failure."""
        with self._lock:
            if name in self.mib_builder.mibSymbols:
                return True
            try:
                self.mib_builder.load_modules(name)
                return True
            except Exception as e:
                self.logger.debug(f"Standard module {name} not loadable: {e}")
                return False

    def loaded_modules(self) -> List[str]:
        """Public modules in registry order (dependencies first)."""
        return [name for name in self.mib_builder.mibSymbols if not name.startswith("__")]

    def module_type_count(self, name: str) -> int:
        symbols = self.mib_builder.mibSymbols.get(name, {})
        return sum(
            1
            for obj in symbols.values()
            if inspect.isclass(obj) and hasattr(obj, "subtypeSpec")
        )

    def module_symbols(self, name: str) -> List[SymbolRecord]:
        """Convert the module's node symbols into raw records."""
        records = []
        symbols: Dict = self.mib_builder.mibSymbols.get(name, {})

        for sym_name, mib_node in symbols.items():
            if sym_name in IGNORED_SYMBOLS or inspect.isclass(mib_node):
                continue
            kind = _kind_of(mib_node)
            if kind is None:
                continue

            record = SymbolRecord(module=name, name=sym_name, kind=kind)
            self._extract_attributes(record, mib_node)
            records.append(record)

        return records

    def _extract_attributes(self, record: SymbolRecord, mib_node):
        try:
            oid_tuple = mib_node.getName()
            if oid_tuple:
                record.oid = ".".join(str(arc) for arc in oid_tuple)
        except Exception as e:
            self.logger.debug(f"Failed to extract OID for {record.name}: {e}")

        if hasattr(mib_node, "getSyntax"):
            try:
                record.syntax = render_syntax(mib_node.getSyntax())
            except Exception as e:
                self.logger.debug(f"Failed to extract syntax for {record.name}: {e}")

        if hasattr(mib_node, "getMaxAccess"):
            try:
                record.access = normalize_access(mib_node.getMaxAccess())
            except Exception as e:
                self.logger.debug(f"Failed to extract access for {record.name}: {e}")

        if hasattr(mib_node, "getStatus"):
            try:
                record.status = normalize_status(mib_node.getStatus())
            except Exception as e:
                self.logger.debug(f"Failed to extract status for {record.name}: {e}")

        if hasattr(mib_node, "getDescription"):
            try:
                description = mib_node.getDescription()
                if description:
                    record.description = str(description)
            except Exception as e:
                self.logger.debug(f"Failed to extract description for {record.name}: {e}")


# ============= SHARED HANDLE =============

_shared_handle: Optional[CompilerHandle] = None
_shared_lock = threading.Lock()


def get_compiler_handle(compiled_dir: str, search_paths: Optional[List[str]] = None) -> CompilerHandle:
    """Process-wide handle, created on first use."""
    global _shared_handle
    with _shared_lock:
        if _shared_handle is None:
            _shared_handle = CompilerHandle(compiled_dir, search_paths)
        else:
            for path in search_paths or []:
                _shared_handle.add_search_path(path)
        return _shared_handle
