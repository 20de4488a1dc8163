#!/usr/bin/env python3
"""
Shared fixtures: temporary config, SQLite repository, and a text-driven
compiler double that mimics CompilerHandle without pysmi.
"""

import re
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from core.compiler import SymbolRecord
from core.exceptions import CompileAttemptError
from core.models import NodeKind, normalize_access, normalize_status
from core.parser import extract_module_name
from services.config_service import Config
from services.db_service import NodeRepository
from services.mib_service import MibService


# ============================================
# COMPILER DOUBLE
# ============================================

SMI_ROOTS = OrderedDict([
    ("zeroDotZero", "0.0"),
    ("iso", "1"),
    ("org", "1.3"),
    ("dod", "1.3.6"),
    ("internet", "1.3.6.1"),
    ("directory", "1.3.6.1.1"),
    ("mgmt", "1.3.6.1.2"),
    ("mib-2", "1.3.6.1.2.1"),
    ("transmission", "1.3.6.1.2.1.10"),
    ("experimental", "1.3.6.1.3"),
    ("private", "1.3.6.1.4"),
    ("enterprises", "1.3.6.1.4.1"),
])

# Text the double refuses, like a strict SMI parser would
DEFECT_RE = re.compile(r"2147483648|'0[0-9a-fA-F]+'[hH]|\(\s*size\s+\(|\.\.\s*MAX\b")

DEF_RE = re.compile(
    r"^[ \t]*([a-z][\w-]*)[ \t]+"
    r"(OBJECT IDENTIFIER|OBJECT-TYPE|MODULE-IDENTITY|OBJECT-IDENTITY|NOTIFICATION-TYPE|"
    r"OBJECT-GROUP|NOTIFICATION-GROUP|MODULE-COMPLIANCE)\b"
    r"(.*?)::=\s*\{\s*([\w-]+)\s+(\d+)\s*\}",
    re.M | re.S,
)
TC_RE = re.compile(r"^\s*[A-Z][\w-]*\s*::=\s*TEXTUAL-CONVENTION", re.M)

MACRO_KINDS = {
    "OBJECT IDENTIFIER": NodeKind.NODE,
    "MODULE-IDENTITY": NodeKind.NODE,
    "OBJECT-IDENTITY": NodeKind.NODE,
    "NOTIFICATION-TYPE": NodeKind.NOTIFICATION,
    "OBJECT-GROUP": NodeKind.GROUP,
    "NOTIFICATION-GROUP": NodeKind.GROUP,
    "MODULE-COMPLIANCE": NodeKind.COMPLIANCE,
}

SOURCE_SUFFIXES = ("", ".mib", ".txt", ".my")


class FakeCompiler:
    """Finds MIB files by candidate name and extracts nodes with regexes."""

    def __init__(self, fail_modules: Optional[set] = None):
        self.search_paths: List[str] = []
        self.fail_modules = set(fail_modules or [])
        self.modules: "OrderedDict[str, List[SymbolRecord]]" = OrderedDict()
        self.type_counts: Dict[str, int] = {}
        self.requested: List[str] = []
        self.stats = {"compile_attempts": 0, "compile_failures": 0, "modules_loaded": 0}

    def add_search_path(self, path) -> None:
        if str(path) not in self.search_paths:
            self.search_paths.append(str(path))

    def _find_source(self, candidate: str) -> Optional[Path]:
        for directory in self.search_paths:
            for suffix in SOURCE_SUFFIXES:
                path = Path(directory) / f"{candidate}{suffix}"
                if path.is_file():
                    return path
        return None

    def load_module(self, candidate: str) -> str:
        self.stats["compile_attempts"] += 1
        self.requested.append(candidate)

        source = self._find_source(candidate)
        if source is None:
            self.stats["compile_failures"] += 1
            raise CompileAttemptError(candidate, "source MIB not found")

        text = source.read_text(encoding="utf-8")
        name = extract_module_name(text)
        if not name:
            self.stats["compile_failures"] += 1
            raise CompileAttemptError(candidate, "no module header")
        if name in self.fail_modules:
            self.stats["compile_failures"] += 1
            raise CompileAttemptError(candidate, f"{name} rejected")
        defect = DEFECT_RE.search(text)
        if defect:
            self.stats["compile_failures"] += 1
            raise CompileAttemptError(candidate, f"syntax error near {defect.group(0)!r}")

        self.load_builtin("SNMPv2-SMI")
        self.modules[name] = self._parse(name, text)
        self.type_counts[name] = len(TC_RE.findall(text))
        self.stats["modules_loaded"] += 1
        return name

    def load_builtin(self, name: str) -> bool:
        if name == "SNMPv2-SMI":
            if name not in self.modules:
                self.modules[name] = [
                    SymbolRecord(module=name, name=label, oid=oid, kind=NodeKind.NODE, status="current")
                    for label, oid in SMI_ROOTS.items()
                ]
            return True
        if name in ("SNMPv2-TC", "SNMPv2-CONF"):
            self.modules.setdefault(name, [])
            return True
        return False

    def _parse(self, module: str, text: str) -> List[SymbolRecord]:
        oids = dict(SMI_ROOTS)
        kinds: Dict[str, NodeKind] = {}
        definitions = []

        for match in DEF_RE.finditer(text):
            label, macro, body, parent, arc = match.groups()
            definitions.append((label, macro, body, parent, arc))

        # Resolve in passes; forward references are legal in MIB text
        changed = True
        while changed:
            changed = False
            for label, _, _, parent, arc in definitions:
                if label not in oids and parent in oids:
                    oids[label] = f"{oids[parent]}.{arc}"
                    changed = True

        records = []
        for label, macro, body, parent, arc in definitions:
            kind = self._kind(macro, body, kinds.get(parent))
            kinds[label] = kind
            records.append(
                SymbolRecord(
                    module=module,
                    name=label,
                    oid=oids.get(label, ""),
                    kind=kind,
                    syntax=self._field(r"SYNTAX\s+([^\n]+)", body),
                    access=normalize_access(self._field(r"(?:MAX-ACCESS|ACCESS)\s+([\w-]+)", body)),
                    status=normalize_status(self._field(r"STATUS\s+(\w+)", body)),
                    description=self._field(r'DESCRIPTION\s+"(.*?)"', body),
                )
            )
        return records

    @staticmethod
    def _field(pattern: str, body: str) -> str:
        match = re.search(pattern, body, re.S)
        return match.group(1).strip() if match else ""

    @staticmethod
    def _kind(macro: str, body: str, parent_kind: Optional[NodeKind]) -> NodeKind:
        if macro in MACRO_KINDS:
            return MACRO_KINDS[macro]
        if re.search(r"SYNTAX\s+SEQUENCE\s+OF", body):
            return NodeKind.TABLE
        if re.search(r"SYNTAX\s+[A-Z][\w-]*Entry\s*$", body, re.M):
            return NodeKind.ROW
        if parent_kind == NodeKind.ROW:
            return NodeKind.COLUMN
        return NodeKind.SCALAR

    def loaded_modules(self) -> List[str]:
        return list(self.modules)

    def module_symbols(self, name: str) -> List[SymbolRecord]:
        return list(self.modules.get(name, []))

    def module_type_count(self, name: str) -> int:
        return self.type_counts.get(name, 0)


# ============================================
# SAMPLE MIB TEXT
# ============================================

IF_MIB = """\
IF-MIB DEFINITIONS ::= BEGIN

IMPORTS
    MODULE-IDENTITY, OBJECT-TYPE, Counter32, Integer32,
    mib-2                                   FROM SNMPv2-SMI
    TEXTUAL-CONVENTION, DisplayString       FROM SNMPv2-TC
    MODULE-COMPLIANCE, OBJECT-GROUP         FROM SNMPv2-CONF;

ifMIB MODULE-IDENTITY
    LAST-UPDATED "200006140000Z"
    ORGANIZATION "IETF Interfaces MIB Working Group"
    CONTACT-INFO "Keith McCloghrie"
    DESCRIPTION
            "The MIB module to describe generic objects for network
             interface sub-layers."
    ::= { mib-2 31 }

InterfaceIndex ::= TEXTUAL-CONVENTION
    DISPLAY-HINT "d"
    STATUS       current
    DESCRIPTION  "A unique value, greater than zero, for each interface."
    SYNTAX       Integer32 (1..2147483647)

interfaces OBJECT IDENTIFIER ::= { mib-2 2 }

ifNumber OBJECT-TYPE
    SYNTAX      Integer32
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION
            "The number of network interfaces (regardless of their
             current state) present on this system."
    ::= { interfaces 1 }

ifTable OBJECT-TYPE
    SYNTAX      SEQUENCE OF IfEntry
    MAX-ACCESS  not-accessible
    STATUS      current
    DESCRIPTION "A list of interface entries."
    ::= { interfaces 2 }

ifEntry OBJECT-TYPE
    SYNTAX      IfEntry
    MAX-ACCESS  not-accessible
    STATUS      current
    DESCRIPTION "An entry containing management information."
    INDEX   { ifIndex }
    ::= { ifTable 1 }

IfEntry ::=
    SEQUENCE {
        ifIndex   InterfaceIndex,
        ifDescr   DisplayString,
        ifInOctets Counter32
    }

ifIndex OBJECT-TYPE
    SYNTAX      InterfaceIndex
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "A unique value for each interface."
    ::= { ifEntry 1 }

ifDescr OBJECT-TYPE
    SYNTAX      DisplayString (SIZE (0..255))
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "A textual string containing information about the interface."
    ::= { ifEntry 2 }

ifInOctets OBJECT-TYPE
    SYNTAX      Counter32
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "The total number of octets received on the interface."
    ::= { ifEntry 10 }

ifStackLastChange OBJECT-TYPE
    SYNTAX      Integer32
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "Defined under an arc this module never resolves."
    ::= { ifStackGroupUnknown 6 }

END
"""

OVERFLOW_MIB = """\
ACME-MIB DEFINITIONS ::= BEGIN

IMPORTS
    MODULE-IDENTITY, OBJECT-TYPE, enterprises FROM SNMPv2-SMI;

acme MODULE-IDENTITY
    LAST-UPDATED "201901010000Z"
    ORGANIZATION "Acme"
    CONTACT-INFO "noc@acme.example"
    DESCRIPTION  "Acme devices."
    ::= { enterprises 4242 }

acmeQueueDepth OBJECT-TYPE
    SYNTAX      INTEGER (0..2147483648)
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "Current queue depth."
    ::= { acme 1 }

END
"""

VENDOR_MIB = """\
VENDOR-MIB DEFINITIONS ::= BEGIN

IMPORTS
    OBJECT-TYPE, enterprises FROM SNMPv2-SMI
    ifIndex FROM IF-MIB;

vendor OBJECT IDENTIFIER ::= { enterprises 9 }

vendorUptime OBJECT-TYPE
    SYNTAX      Integer32
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "Seconds since boot."
    ::= { vendor 1 }

END
"""


# ============================================
# FIXTURES
# ============================================


@pytest.fixture
def config(tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "database": {
                    "backend": "sqlite",
                    "sqlite_path": str(tmp_path / "data" / "mibs.db"),
                    "max_retries": 1,
                    "retry_delay": 0,
                },
                "parser": {
                    "compiled_dir": str(tmp_path / "compiled"),
                    "scratch_dir": str(tmp_path / "scratch"),
                    "include_platform_dirs": False,
                    "standard_mibs": ["SNMPv2-SMI", "SNMPv2-TC", "SNMPv2-CONF"],
                },
                "logging": {"level": "DEBUG"},
            }
        ),
        encoding="utf-8",
    )
    return Config(str(config_path))


@pytest.fixture
def repository(config):
    repo = NodeRepository(config)
    yield repo
    repo.close()


@pytest.fixture
def fake_compiler():
    return FakeCompiler()


@pytest.fixture
def service(config, repository, fake_compiler):
    svc = MibService(config, repository=repository, compiler=fake_compiler)
    yield svc
    svc.close()


@pytest.fixture
def mib_dir(tmp_path):
    directory = tmp_path / "mibs"
    directory.mkdir()
    return directory


@pytest.fixture
def write_mib(mib_dir):
    def _write(filename: str, text: str) -> Path:
        path = mib_dir / filename
        path.write_text(text, encoding="utf-8")
        return path

    return _write
