#!/usr/bin/env python3
"""
OID canonicalization and ordering

Dotted identifiers arrive from compilers, databases and SNMP agents with
inconsistent leading dots and instance suffixes. Everything that keys or
sorts by OID goes through these helpers.
"""

from functools import cmp_to_key
from typing import Callable, Iterable, List, Optional, Tuple

CanonicalOid = Tuple[str, ...]


def canonicalize(oid: Optional[str]) -> CanonicalOid:
    """Split an OID into segments, ignoring a leading dot and empty parts."""
    if not oid:
        return ()
    text = oid.strip()
    if text.startswith("."):
        text = text[1:]
    return tuple(part.strip() for part in text.split(".") if part.strip())


def canonical_key(oid: Optional[str]) -> str:
    """Canonical string form used as a map key."""
    return ".".join(canonicalize(oid))


def _segment_key(segment: str):
    # Numeric arcs order before symbolic ones so the order stays total
    if segment.isascii() and segment.isdigit():
        return (0, int(segment), segment)
    return (1, 0, segment)


def compare(a: str, b: str) -> int:
    """
    Compare two OIDs numerically, arc by arc.

    Returns -1, 0 or 1. A shorter OID that is a prefix of the other sorts
    first. Identical raw strings short-circuit to 0.
    """
    if a == b:
        return 0

    left = canonicalize(a)
    right = canonicalize(b)

    for x, y in zip(left, right):
        kx, ky = _segment_key(x), _segment_key(y)
        if kx != ky:
            return -1 if kx < ky else 1

    if len(left) != len(right):
        return -1 if len(left) < len(right) else 1
    return 0


oid_sort_key = cmp_to_key(compare)


def sort_oids(oids: Iterable[str]) -> List[str]:
    return sorted(oids, key=oid_sort_key)


def parent_of(oid: str) -> Optional[str]:
    """OID with its last arc removed, or None for a single arc."""
    parts = canonicalize(oid)
    if len(parts) <= 1:
        return None
    return ".".join(parts[:-1])


def is_prefix(prefix: str, oid: str) -> bool:
    p = canonicalize(prefix)
    return canonicalize(oid)[:len(p)] == p


# ============================================
# LOOKUP VARIANTS
# ============================================


def identity(oid: str) -> str:
    return oid


def strip_leading_dot(oid: str) -> str:
    return oid[1:] if oid.startswith(".") else oid


def add_leading_dot(oid: str) -> str:
    return oid if oid.startswith(".") else "." + oid


def strip_trailing_zero_instance(oid: str) -> Optional[str]:
    """Drop a scalar '.0' instance suffix; None when there is none."""
    if oid.endswith(".0") and len(oid) > 2:
        return oid[:-2]
    return None


VARIANT_TRANSFORMS: List[Callable[[str], str]] = [
    identity,
    strip_leading_dot,
    add_leading_dot,
]


def lookup_variants(oid: str) -> List[str]:
    """
    Equivalent spellings of an OID to try when searching a store.

    The raw string and its dot variants come first, then the same forms of
    the base when the OID ends in a '.0' instance index.
    """
    oid = (oid or "").strip()
    if not oid:
        return []

    bases = [oid]
    base = strip_trailing_zero_instance(oid)
    if base:
        bases.append(base)

    variants: List[str] = []
    for b in bases:
        for transform in VARIANT_TRANSFORMS:
            candidate = transform(b)
            if candidate and candidate not in variants:
                variants.append(candidate)
    return variants
