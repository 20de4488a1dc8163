#!/usr/bin/env python3
"""
OID Resolver Service

Resolves numeric OIDs (as returned by SNMP agents) to symbolic names using
the node repository. Includes an in-memory LRU cache.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from core.exceptions import NodeNotFoundError
from core.models import Node
from core.oid import canonicalize
from utils.logger import get_logger


@dataclass
class ResolvedOid:
    """A node plus the instance arcs that followed it in the queried OID."""

    oid: str
    node: Node
    instance: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.node.name}.{self.instance}" if self.instance else self.node.name


class OIDCache:
    """
    LRU cache for OID resolution.

    Stores misses too (as None) so unknown vendor OIDs are not re-queried.
    """

    _MISSING = object()

    def __init__(self, max_size: int = 10000):
        self.cache = OrderedDict()
        self.max_size = max_size
        self.hits = 0
        self.misses = 0

    def get(self, oid: str):
        """Cached value, or OIDCache._MISSING when the OID was never resolved."""
        if oid in self.cache:
            self.cache.move_to_end(oid)
            self.hits += 1
            return self.cache[oid]

        self.misses += 1
        return self._MISSING

    def put(self, oid: str, data: Optional[ResolvedOid]):
        if oid in self.cache:
            self.cache.move_to_end(oid)
        elif len(self.cache) >= self.max_size:
            self.cache.popitem(last=False)

        self.cache[oid] = data

    def clear(self):
        self.cache.clear()
        self.hits = 0
        self.misses = 0

    def get_stats(self) -> Dict:
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0

        return {
            'size': len(self.cache),
            'max_size': self.max_size,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': f"{hit_rate:.1f}%"
        }


class OIDResolverService:
    """
    Resolve OIDs against stored nodes.

    Example:
        resolver = OIDResolverService(repository)
        resolver.resolve_name('1.3.6.1.2.1.2.2.1.10.3')
        # 'ifInOctets.3'
    """

    def __init__(self, repository, cache_size: int = 10000):
        self.repository = repository
        self.cache = OIDCache(max_size=cache_size)
        self.logger = get_logger(self.__class__.__name__)

    def resolve(self, oid: str) -> Optional[ResolvedOid]:
        """
        Longest stored prefix of `oid`, with the remaining arcs as instance.

        Returns None when not even the first arc is known.
        """
        cached = self.cache.get(oid)
        if cached is not OIDCache._MISSING:
            return cached

        parts = canonicalize(oid)
        result = None
        for length in range(len(parts), 0, -1):
            prefix = ".".join(parts[:length])
            try:
                node = self.repository.get_node(prefix)
            except NodeNotFoundError:
                continue
            matched = len(canonicalize(node.oid))
            result = ResolvedOid(oid=oid, node=node, instance=".".join(parts[matched:]))
            break

        if result is None:
            self.logger.debug(f"OID not found: {oid}")
        self.cache.put(oid, result)
        return result

    def resolve_name(self, oid: str) -> str:
        """Symbolic name with instance suffix, or the OID itself when unknown."""
        resolved = self.resolve(oid)
        return resolved.display_name if resolved else oid

    def resolve_batch(self, oids: List[str]) -> Dict[str, Optional[ResolvedOid]]:
        return {oid: self.resolve(oid) for oid in oids}

    def clear_cache(self):
        self.cache.clear()

    def get_stats(self) -> Dict:
        return self.cache.get_stats()
