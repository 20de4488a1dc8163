#!/usr/bin/env python3
"""
Compiles a small self-contained MIB with the real pysmi/pysnmp stack
"""

import pytest

from core.compiler import STANDARD_MIB_DIR, CompilerHandle, render_syntax
from core.exceptions import CompileAttemptError
from core.models import NodeKind
from core.parser import MibLoader, convert_symbols

pytestmark = pytest.mark.integration

TEST_MIB = """\
TEST-MIB DEFINITIONS ::= BEGIN

IMPORTS
    MODULE-IDENTITY, OBJECT-TYPE, Integer32, enterprises
        FROM SNMPv2-SMI;

testMIB MODULE-IDENTITY
    LAST-UPDATED "202401010000Z"
    ORGANIZATION "Example"
    CONTACT-INFO "noc@example.com"
    DESCRIPTION  "Test module."
    ::= { enterprises 99999 }

testObjects OBJECT IDENTIFIER ::= { testMIB 1 }

testCounter OBJECT-TYPE
    SYNTAX      Integer32 (0..100)
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "A bounded test value."
    ::= { testObjects 1 }

END
"""

TC_MIB = """\
TC-TEST-MIB DEFINITIONS ::= BEGIN

IMPORTS
    MODULE-IDENTITY, OBJECT-TYPE, enterprises
        FROM SNMPv2-SMI
    DisplayString, TruthValue
        FROM SNMPv2-TC
    OBJECT-GROUP
        FROM SNMPv2-CONF;

tcTestMIB MODULE-IDENTITY
    LAST-UPDATED "202401010000Z"
    ORGANIZATION "Example"
    CONTACT-INFO "noc@example.com"
    DESCRIPTION  "Textual convention test module."
    ::= { enterprises 99996 }

tcObjects OBJECT IDENTIFIER ::= { tcTestMIB 1 }

tcLabel OBJECT-TYPE
    SYNTAX      DisplayString (SIZE (0..32))
    MAX-ACCESS  read-write
    STATUS      current
    DESCRIPTION "A label."
    ::= { tcObjects 1 }

tcEnabled OBJECT-TYPE
    SYNTAX      TruthValue
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "Whether the feature is on."
    ::= { tcObjects 2 }

tcGroup OBJECT-GROUP
    OBJECTS     { tcLabel, tcEnabled }
    STATUS      current
    DESCRIPTION "All objects."
    ::= { tcTestMIB 2 }

END
"""

V1_MIB = """\
V1-TEST-MIB DEFINITIONS ::= BEGIN

IMPORTS
    enterprises
        FROM RFC1155-SMI
    OBJECT-TYPE
        FROM RFC-1212
    TRAP-TYPE
        FROM RFC-1215;

v1Test OBJECT IDENTIFIER ::= { enterprises 99998 }

v1Counter OBJECT-TYPE
    SYNTAX  INTEGER (0..10)
    ACCESS  read-only
    STATUS  mandatory
    DESCRIPTION "A version 1 test value."
    ::= { v1Test 1 }

v1Trap TRAP-TYPE
    ENTERPRISE  v1Test
    VARIABLES   { v1Counter }
    DESCRIPTION "A version 1 test trap."
    ::= 1

END
"""

LOWERCASE_SIZE_MIB = """\
SIZE-TEST-MIB DEFINITIONS ::= BEGIN

IMPORTS
    MODULE-IDENTITY, OBJECT-TYPE, enterprises
        FROM SNMPv2-SMI;

sizeTestMIB MODULE-IDENTITY
    LAST-UPDATED "202401010000Z"
    ORGANIZATION "Example"
    CONTACT-INFO "noc@example.com"
    DESCRIPTION  "Needs the lowercase size repair."
    ::= { enterprises 99997 }

sizeName OBJECT-TYPE
    SYNTAX      OCTET STRING (size (0..10))
    MAX-ACCESS  read-only
    STATUS      current
    DESCRIPTION "A short name."
    ::= { sizeTestMIB 1 }

END
"""


@pytest.fixture
def handle(tmp_path):
    mib_dir = tmp_path / "mibs"
    mib_dir.mkdir()
    for name, text in (("TEST-MIB", TEST_MIB), ("TC-TEST-MIB", TC_MIB), ("V1-TEST-MIB", V1_MIB)):
        (mib_dir / f"{name}.mib").write_text(text, encoding="utf-8")
    return CompilerHandle(str(tmp_path / "compiled"), [str(mib_dir)])


def test_compile_and_extract(handle):
    assert handle.load_module("TEST-MIB") == "TEST-MIB"
    assert "TEST-MIB" in handle.loaded_modules()

    records = {r.name: r for r in handle.module_symbols("TEST-MIB")}

    counter = records["testCounter"]
    assert counter.oid == "1.3.6.1.4.1.99999.1.1"
    assert counter.kind == NodeKind.SCALAR
    assert "0..100" in counter.syntax
    assert counter.access == "read-only"
    assert counter.status == "current"
    assert counter.description == "A bounded test value."

    assert records["testObjects"].oid == "1.3.6.1.4.1.99999.1"
    assert "PYSNMP_MODULE_ID" not in records


def test_converted_nodes(handle):
    handle.load_module("TEST-MIB")

    result = convert_symbols(handle.module_symbols("TEST-MIB"))
    by_name = {n.name: n for n in result.nodes}

    assert by_name["testCounter"].parent_oid == "1.3.6.1.4.1.99999.1"
    assert by_name["testMIB"].kind == NodeKind.NODE


def test_builtin_modules(handle):
    assert handle.load_builtin("SNMPv2-SMI")
    assert not handle.load_builtin("NO-SUCH-MIB")

    enterprises = {r.name: r for r in handle.module_symbols("SNMPv2-SMI")}["enterprises"]
    assert enterprises.oid == "1.3.6.1.4.1"


def test_unknown_candidate(handle):
    with pytest.raises(CompileAttemptError) as exc_info:
        handle.load_module("NO-SUCH-MIB")
    assert exc_info.value.candidate == "NO-SUCH-MIB"
    assert handle.stats["compile_failures"] == 1


def test_render_syntax_without_constraints():
    assert render_syntax(None) == ""


def test_bundled_standard_mibs_come_first(handle):
    assert handle.search_paths[0] == str(STANDARD_MIB_DIR)
    for name in ("SNMPv2-SMI", "SNMPv2-TC", "SNMPv2-CONF", "RFC1155-SMI", "RFC-1212", "RFC-1215"):
        assert (STANDARD_MIB_DIR / name).is_file()


def test_textual_conventions_and_groups(handle):
    assert handle.load_module("TC-TEST-MIB") == "TC-TEST-MIB"

    records = {r.name: r for r in handle.module_symbols("TC-TEST-MIB")}

    assert records["tcLabel"].oid == "1.3.6.1.4.1.99996.1.1"
    assert records["tcLabel"].access == "read-write"
    assert "0..32" in records["tcLabel"].syntax
    assert "true(1)" in records["tcEnabled"].syntax
    assert records["tcGroup"].kind == NodeKind.GROUP


def test_version_one_module(handle):
    assert handle.load_module("V1-TEST-MIB") == "V1-TEST-MIB"

    records = {r.name: r for r in handle.module_symbols("V1-TEST-MIB")}

    assert records["v1Counter"].oid == "1.3.6.1.4.1.99998.1"
    assert records["v1Counter"].kind == NodeKind.SCALAR
    assert records["v1Trap"].kind == NodeKind.NOTIFICATION


def test_loader_repairs_lowercase_size(handle, tmp_path):
    path = tmp_path / "SIZE-TEST-MIB.mib"
    path.write_text(LOWERCASE_SIZE_MIB, encoding="utf-8")

    result = MibLoader(handle, tmp_path / "scratch").load(path)

    assert result.module_name == "SIZE-TEST-MIB"
    assert result.sanitized
    assert result.attempts
    records = {r.name: r for r in handle.module_symbols("SIZE-TEST-MIB")}
    assert "0..10" in records["sizeName"].syntax
