"""
Service modules for the MIB engine
"""

from .config_service import Config
from .db_service import NodeRepository
from .mib_service import MibService
from .oid_resolver_service import OIDResolverService

__all__ = ["Config", "NodeRepository", "MibService", "OIDResolverService"]
