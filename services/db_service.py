#!/usr/bin/env python3
"""
Node Repository
Durable storage of MIB modules and nodes with merge-safe batch writes
"""

import json
import time
import warnings
from contextlib import contextmanager
from dataclasses import replace
from functools import wraps
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote_plus

import pandas as pd

try:
    from sqlalchemy import bindparam, create_engine, event, text
    from sqlalchemy.exc import OperationalError, SQLAlchemyError
except ImportError as e:
    print(f"[ERROR] SQLAlchemy not installed: {e}")
    print("[INFO] Install with: pip install sqlalchemy")
    raise

from core.exceptions import ModuleNotFoundError, NodeNotFoundError, StorageError
from core.models import ModuleStats, ModuleSummary, Node, merge_nodes
from core.oid import canonical_key, lookup_variants
from utils.logger import get_logger

warnings.filterwarnings("ignore", category=UserWarning, module="sqlalchemy")


def retry_on_connection_error(max_retries: Optional[int] = None, delay: Optional[float] = None):
    """
    Retry on connection errors; surface every database failure as StorageError.

    Without explicit values the repository's configured max_retries and
    retry_delay apply.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            retries = max(1, max_retries if max_retries is not None else self.max_retries)
            wait = delay if delay is not None else self.retry_delay
            for attempt in range(retries):
                try:
                    return func(self, *args, **kwargs)
                except OperationalError as e:
                    self.stats["errors"] += 1
                    self.stats["last_error"] = str(e)[:200]
                    if attempt < retries - 1:
                        self.logger.warning(
                            f"Connection error (attempt {attempt + 1}/{retries}): {str(e)[:100]}"
                        )
                        time.sleep(wait * (attempt + 1))
                        if not self._test_connection():
                            self._reconnect()
                    else:
                        self.logger.error(f"Failed after {retries} attempts: {str(e)[:100]}")
                        raise StorageError(f"{func.__name__} failed: {e}") from e
                except SQLAlchemyError as e:
                    self.stats["errors"] += 1
                    self.stats["last_error"] = str(e)[:200]
                    self.logger.error(f"{func.__name__} failed: {str(e)[:200]}")
                    raise StorageError(f"{func.__name__} failed: {e}") from e

        return wrapper

    return decorator


# ============================================
# SCHEMA
# ============================================

SQLITE_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS mib_modules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE,
        file_path TEXT DEFAULT '',
        loaded_at REAL,
        updated_at REAL,
        node_count INTEGER DEFAULT 0,
        scalar_count INTEGER DEFAULT 0,
        table_count INTEGER DEFAULT 0,
        column_count INTEGER DEFAULT 0,
        type_count INTEGER DEFAULT 0,
        skipped_nodes INTEGER DEFAULT 0,
        missing_imports TEXT DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mib_nodes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        oid TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        parent_oid TEXT,
        kind TEXT,
        syntax TEXT,
        access TEXT,
        status TEXT,
        description TEXT,
        module_id INTEGER NOT NULL,
        FOREIGN KEY (module_id) REFERENCES mib_modules(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_oid ON mib_nodes(oid)",
    "CREATE INDEX IF NOT EXISTS idx_name ON mib_nodes(name)",
    "CREATE INDEX IF NOT EXISTS idx_parent_oid ON mib_nodes(parent_oid)",
    "CREATE INDEX IF NOT EXISTS idx_module_id ON mib_nodes(module_id)",
]

MYSQL_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS mib_modules (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        file_path TEXT,
        loaded_at DOUBLE,
        updated_at DOUBLE,
        node_count INT DEFAULT 0,
        scalar_count INT DEFAULT 0,
        table_count INT DEFAULT 0,
        column_count INT DEFAULT 0,
        type_count INT DEFAULT 0,
        skipped_nodes INT DEFAULT 0,
        missing_imports TEXT
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS mib_nodes (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        oid VARCHAR(512) NOT NULL UNIQUE,
        name VARCHAR(255) NOT NULL,
        parent_oid VARCHAR(512),
        kind VARCHAR(32),
        syntax TEXT,
        access VARCHAR(32),
        status VARCHAR(32),
        description MEDIUMTEXT,
        module_id BIGINT NOT NULL,
        INDEX idx_name (name),
        INDEX idx_parent_oid (parent_oid),
        INDEX idx_module_id (module_id),
        FOREIGN KEY (module_id) REFERENCES mib_modules(id) ON DELETE CASCADE
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
    """,
]

NODE_COLUMNS = """
    n.oid, n.name, n.parent_oid, n.kind, n.syntax, n.access, n.status,
    n.description, m.name AS module
"""

MODULE_COLUMNS = """
    id, name, file_path, node_count, scalar_count, table_count, column_count,
    type_count, skipped_nodes, missing_imports, updated_at
"""


# ============================================
# MISSING IMPORTS CODEC
# ============================================


def encode_missing_imports(names: Iterable[str]) -> str:
    """JSON array; comma-separated text if the names cannot be encoded."""
    names = list(names or [])
    if not names:
        return ""
    try:
        return json.dumps(names)
    except (TypeError, ValueError):
        return ",".join(str(name) for name in names)


def decode_missing_imports(raw: Optional[str]) -> List[str]:
    """Accept either the JSON or the comma-separated form."""
    if not raw or not raw.strip():
        return []
    try:
        decoded = json.loads(raw)
        if isinstance(decoded, list):
            return [str(item) for item in decoded if str(item).strip()]
    except ValueError:
        pass
    return [part.strip() for part in raw.split(",") if part.strip()]


class NodeRepository:
    """
    Persistent store for modules and nodes.

    Uses SQLite by default (foreign keys switched on per connection so
    deleting a module cascades to its nodes) or MySQL through pymysql.
    Each batch write runs in one transaction; reads use their own
    connections and see committed data only.
    """

    IN_CHUNK_SIZE = 500

    def __init__(self, config):
        """
        Initialize the repository.

        Args:
            config: Configuration object with a database section
        """
        self.config = config
        self.logger = get_logger(self.__class__.__name__)

        self.max_retries = config.database.max_retries
        self.retry_delay = config.database.retry_delay

        self.stats = {
            "nodes_inserted": 0,
            "nodes_updated": 0,
            "modules_created": 0,
            "modules_deleted": 0,
            "queries_executed": 0,
            "errors": 0,
            "reconnections": 0,
            "last_error": None,
        }

        self.engine = self._create_engine()
        self._init_schema()
        self.logger.info(f"✅ Node repository ready ({self.config.database.backend})")

    # ============================================
    # ENGINE & CONNECTIONS
    # ============================================

    def _create_engine(self):
        db = self.config.database

        if db.backend == "mysql":
            engine = create_engine(
                self._build_connection_string(),
                pool_size=db.pool_size,
                max_overflow=db.max_overflow,
                pool_timeout=db.pool_timeout,
                pool_pre_ping=db.pool_pre_ping,
                pool_recycle=db.pool_recycle,
                echo=db.echo,
            )
            return engine

        engine = create_engine(
            f"sqlite:///{db.sqlite_path}",
            echo=db.echo,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    def _build_connection_string(self) -> str:
        db = self.config.database
        password_encoded = quote_plus(db.password or "")
        return (
            f"mysql+pymysql://{db.user}:{password_encoded}@"
            f"{db.host}:{db.port}/{db.name}?charset=utf8mb4"
        )

    def _init_schema(self):
        statements = MYSQL_SCHEMA if self.config.database.backend == "mysql" else SQLITE_SCHEMA
        try:
            with self.engine.begin() as conn:
                for statement in statements:
                    conn.execute(text(statement))
        except SQLAlchemyError as e:
            raise StorageError(f"schema initialization failed: {e}") from e

    @contextmanager
    def _get_connection(self):
        """Read connection."""
        conn = self.engine.connect()
        try:
            yield conn
        finally:
            conn.close()
        self.stats["queries_executed"] += 1

    @contextmanager
    def _transaction(self):
        """Write connection; commits on success, rolls back on any error."""
        with self.engine.begin() as conn:
            yield conn
        self.stats["queries_executed"] += 1

    def _test_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False

    def _reconnect(self) -> bool:
        self.logger.info("Attempting to reconnect...")
        self.stats["reconnections"] += 1
        old_engine = self.engine
        try:
            self.engine = self._create_engine()
            old_engine.dispose()
            return True
        except Exception as e:
            self.logger.error(f"Reconnection failed: {str(e)[:100]}")
            self.engine = old_engine
            return False

    def health_check(self) -> Dict[str, Any]:
        health = {"status": "unknown", "backend": self.config.database.backend, "error": None}
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            health["status"] = "healthy"
        except Exception as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)[:100]
        return health

    def get_statistics(self) -> Dict[str, Any]:
        return self.stats.copy()

    def close(self):
        """Dispose the engine and its pooled connections."""
        try:
            self.engine.dispose()
            self.logger.debug("Database engine disposed")
        except Exception as e:
            self.logger.error(f"Error closing database connections: {e}")

    # ============================================
    # MODULES
    # ============================================

    @retry_on_connection_error()
    def upsert_module(self, name: str, file_path: str) -> int:
        """Insert or update a module by name; on conflict only file_path changes."""
        with self._transaction() as conn:
            return self._upsert_module(conn, name, file_path)

    def _upsert_module(self, conn, name: str, file_path: str) -> int:
        row = conn.execute(
            text("SELECT id FROM mib_modules WHERE name = :name"), {"name": name}
        ).first()
        if row:
            conn.execute(
                text("UPDATE mib_modules SET file_path = :file_path WHERE id = :id"),
                {"file_path": file_path or "", "id": row[0]},
            )
            return int(row[0])
        return self._insert_module(conn, name, file_path)

    def _insert_module(self, conn, name: str, file_path: str) -> int:
        result = conn.execute(
            text(
                "INSERT INTO mib_modules (name, file_path, loaded_at, missing_imports) "
                "VALUES (:name, :file_path, :loaded_at, '')"
            ),
            {"name": name, "file_path": file_path or "", "loaded_at": time.time()},
        )
        self.stats["modules_created"] += 1
        return int(result.lastrowid)

    @retry_on_connection_error()
    def module_exists(self, name: str) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                text("SELECT 1 FROM mib_modules WHERE name = :name"), {"name": name}
            ).first()
        return row is not None

    @retry_on_connection_error()
    def get_module_id(self, name: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                text("SELECT id FROM mib_modules WHERE name = :name"), {"name": name}
            ).first()
        if row is None:
            raise ModuleNotFoundError(name)
        return int(row[0])

    @staticmethod
    def _row_to_summary(row) -> ModuleSummary:
        return ModuleSummary(
            id=int(row["id"]),
            name=row["name"],
            file_path=row["file_path"] or "",
            node_count=row["node_count"] or 0,
            scalar_count=row["scalar_count"] or 0,
            table_count=row["table_count"] or 0,
            column_count=row["column_count"] or 0,
            type_count=row["type_count"] or 0,
            skipped_nodes=row["skipped_nodes"] or 0,
            missing_imports=decode_missing_imports(row["missing_imports"]),
            updated_at=row["updated_at"],
        )

    @retry_on_connection_error()
    def list_modules(self) -> List[ModuleSummary]:
        with self._get_connection() as conn:
            rows = conn.execute(
                text(f"SELECT {MODULE_COLUMNS} FROM mib_modules ORDER BY name")
            ).mappings().all()
        return [self._row_to_summary(row) for row in rows]

    @retry_on_connection_error()
    def get_module_summary(self, name: str) -> ModuleSummary:
        with self._get_connection() as conn:
            row = conn.execute(
                text(f"SELECT {MODULE_COLUMNS} FROM mib_modules WHERE name = :name"),
                {"name": name},
            ).mappings().first()
        if row is None:
            raise ModuleNotFoundError(name)
        return self._row_to_summary(row)

    @retry_on_connection_error()
    def update_module_stats(self, name: str, stats: ModuleStats) -> None:
        with self._transaction() as conn:
            result = conn.execute(
                text(
                    "UPDATE mib_modules SET node_count = :node_count, scalar_count = :scalar_count, "
                    "table_count = :table_count, column_count = :column_count, "
                    "type_count = :type_count, updated_at = :updated_at WHERE name = :name"
                ),
                {
                    "node_count": stats.node_count,
                    "scalar_count": stats.scalar_count,
                    "table_count": stats.table_count,
                    "column_count": stats.column_count,
                    "type_count": stats.type_count,
                    "updated_at": time.time(),
                    "name": name,
                },
            )
            if result.rowcount == 0:
                raise ModuleNotFoundError(name)

    @retry_on_connection_error()
    def update_module_metadata(self, name: str, skipped_nodes: int, missing_imports: List[str]) -> None:
        with self._transaction() as conn:
            result = conn.execute(
                text(
                    "UPDATE mib_modules SET skipped_nodes = :skipped, missing_imports = :missing, "
                    "updated_at = :updated_at WHERE name = :name"
                ),
                {
                    "skipped": skipped_nodes,
                    "missing": encode_missing_imports(missing_imports),
                    "updated_at": time.time(),
                    "name": name,
                },
            )
            if result.rowcount == 0:
                raise ModuleNotFoundError(name)

    @retry_on_connection_error()
    def delete_module(self, name: str) -> None:
        """Delete a module; its nodes go with it through the foreign key."""
        with self._transaction() as conn:
            result = conn.execute(
                text("DELETE FROM mib_modules WHERE name = :name"), {"name": name}
            )
            if result.rowcount == 0:
                raise ModuleNotFoundError(name)
        self.stats["modules_deleted"] += 1
        self.logger.info(f"Deleted module {name}")

    # ============================================
    # NODE WRITES
    # ============================================

    @retry_on_connection_error()
    def upsert_nodes_batch(self, nodes: List[Node], default_module_id: Optional[int] = None) -> int:
        """
        Insert or merge nodes in a single transaction.

        An existing row keeps each field unless the incoming value is
        non-empty. Modules named by nodes but not yet stored are created with
        no file path. Any failure rolls back the whole batch.

        Returns:
            Number of nodes written
        """
        nodes = [self._canonical_node(node) for node in nodes if canonical_key(node.oid)]
        if not nodes:
            return 0

        inserted = updated = 0
        module_cache: Dict[str, int] = {}

        with self._transaction() as conn:
            existing = self._fetch_existing(conn, [node.oid for node in nodes])

            for node in nodes:
                if node.oid in existing:
                    row_id, stored = existing[node.oid]
                    merged = merge_nodes(stored, node)
                    module_id = self._resolve_module_id(conn, merged.module, module_cache, default_module_id)
                    conn.execute(
                        text(
                            "UPDATE mib_nodes SET name = :name, parent_oid = :parent_oid, kind = :kind, "
                            "syntax = :syntax, access = :access, status = :status, "
                            "description = :description, module_id = :module_id WHERE id = :id"
                        ),
                        {**self._node_params(merged), "module_id": module_id, "id": row_id},
                    )
                    existing[node.oid] = (row_id, merged)
                    updated += 1
                else:
                    module_id = self._resolve_module_id(conn, node.module, module_cache, default_module_id)
                    result = conn.execute(
                        text(
                            "INSERT INTO mib_nodes (oid, name, parent_oid, kind, syntax, access, "
                            "status, description, module_id) VALUES (:oid, :name, :parent_oid, "
                            ":kind, :syntax, :access, :status, :description, :module_id)"
                        ),
                        {**self._node_params(node), "module_id": module_id},
                    )
                    existing[node.oid] = (int(result.lastrowid), node)
                    inserted += 1

        self.stats["nodes_inserted"] += inserted
        self.stats["nodes_updated"] += updated
        self.logger.debug(f"Node batch committed: {inserted} inserted, {updated} merged")
        return inserted + updated

    def _fetch_existing(self, conn, oids: List[str]) -> Dict[str, tuple]:
        """Stored rows for `oids` as {oid: (row id, Node)}."""
        found: Dict[str, tuple] = {}
        query = text(
            f"SELECT n.id, {NODE_COLUMNS} FROM mib_nodes n "
            "JOIN mib_modules m ON m.id = n.module_id WHERE n.oid IN :oids"
        ).bindparams(bindparam("oids", expanding=True))

        unique = list(dict.fromkeys(oids))
        for start in range(0, len(unique), self.IN_CHUNK_SIZE):
            chunk = unique[start:start + self.IN_CHUNK_SIZE]
            for row in conn.execute(query, {"oids": chunk}).mappings():
                found[row["oid"]] = (int(row["id"]), Node.from_row(row))
        return found

    def _resolve_module_id(self, conn, module: str, cache: Dict[str, int], default_module_id: Optional[int]) -> int:
        if not module:
            if default_module_id is None:
                raise StorageError("node has no module and no default module was given")
            return default_module_id
        if module in cache:
            return cache[module]

        row = conn.execute(
            text("SELECT id FROM mib_modules WHERE name = :name"), {"name": module}
        ).first()
        if row:
            module_id = int(row[0])
        else:
            self.logger.debug(f"Auto-creating module {module}")
            module_id = self._insert_module(conn, module, "")
        cache[module] = module_id
        return module_id

    @staticmethod
    def _canonical_node(node: Node) -> Node:
        parent = canonical_key(node.parent_oid) or None
        return replace(node, oid=canonical_key(node.oid), parent_oid=parent)

    @staticmethod
    def _node_params(node: Node) -> Dict[str, Any]:
        return {
            "oid": node.oid,
            "name": node.name,
            "parent_oid": node.parent_oid,
            "kind": node.kind.value,
            "syntax": node.syntax,
            "access": node.access,
            "status": node.status,
            "description": node.description,
        }

    # ============================================
    # NODE READS
    # ============================================

    @retry_on_connection_error()
    def get_node(self, oid: str) -> Node:
        """
        Look up a node, trying the equivalent spellings of the OID.

        Raises:
            NodeNotFoundError: no spelling matched
        """
        variants = lookup_variants(oid)
        query = text(
            f"SELECT {NODE_COLUMNS} FROM mib_nodes n "
            "JOIN mib_modules m ON m.id = n.module_id WHERE n.oid = :oid"
        )
        with self._get_connection() as conn:
            for variant in variants:
                row = conn.execute(query, {"oid": variant}).mappings().first()
                if row:
                    return Node.from_row(row)
        raise NodeNotFoundError(oid, variants)

    @retry_on_connection_error()
    def get_node_by_name(self, name: str, module: Optional[str] = None) -> Node:
        """
        Look up a node by symbolic name.

        Names are not unique across modules. Pass `module` to choose; without
        it the module updated most recently wins.
        """
        sql = (
            f"SELECT {NODE_COLUMNS} FROM mib_nodes n "
            "JOIN mib_modules m ON m.id = n.module_id WHERE n.name = :name"
        )
        params = {"name": name}
        if module:
            sql += " AND m.name = :module"
            params["module"] = module
        sql += " ORDER BY m.updated_at DESC, m.id DESC"

        with self._get_connection() as conn:
            rows = conn.execute(text(sql), params).mappings().all()

        if not rows:
            raise NodeNotFoundError(name)
        if len(rows) > 1:
            owners = ", ".join(row["module"] for row in rows)
            self.logger.debug(f"Name {name} defined in several modules ({owners}); using {rows[0]['module']}")
        return Node.from_row(rows[0])

    def get_ancestors(self, oid: str) -> List[Node]:
        """
        The node followed by its parents up to the first missing one.

        Stops at a repeated OID, so cyclic parent references terminate.
        """
        node = self.get_node(oid)
        chain = [node]
        visited = {canonical_key(node.oid)}

        while node.parent_oid:
            parent_key = canonical_key(node.parent_oid)
            if not parent_key or parent_key in visited:
                break
            visited.add(parent_key)
            try:
                node = self.get_node(node.parent_oid)
            except NodeNotFoundError:
                break
            chain.append(node)

        return chain

    @retry_on_connection_error()
    def get_children(self, parent_oid: str) -> List[Node]:
        """Direct children, in raw (lexical) OID order."""
        key = canonical_key(parent_oid)
        query = text(
            f"SELECT {NODE_COLUMNS} FROM mib_nodes n "
            "JOIN mib_modules m ON m.id = n.module_id "
            "WHERE n.parent_oid IN :parents ORDER BY n.oid"
        ).bindparams(bindparam("parents", expanding=True))
        with self._get_connection() as conn:
            rows = conn.execute(query, {"parents": [key, "." + key]}).mappings().all()
        return [Node.from_row(row) for row in rows]

    @retry_on_connection_error()
    def get_all_nodes(self, module: Optional[str] = None) -> List[Node]:
        sql = f"SELECT {NODE_COLUMNS} FROM mib_nodes n JOIN mib_modules m ON m.id = n.module_id"
        params = {}
        if module:
            sql += " WHERE m.name = :module"
            params["module"] = module
        sql += " ORDER BY n.oid"
        with self._get_connection() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [Node.from_row(row) for row in rows]

    @retry_on_connection_error()
    def search_nodes(self, query: str, limit: int = 100) -> List[Node]:
        """Substring match on name or OID."""
        escaped = query.replace("!", "!!").replace("%", "!%").replace("_", "!_")
        pattern = f"%{escaped}%"
        sql = text(
            f"SELECT {NODE_COLUMNS} FROM mib_nodes n JOIN mib_modules m ON m.id = n.module_id "
            "WHERE n.name LIKE :pattern ESCAPE '!' OR n.oid LIKE :pattern ESCAPE '!' ORDER BY n.oid LIMIT :limit"
        )
        with self._get_connection() as conn:
            rows = conn.execute(sql, {"pattern": pattern, "limit": limit}).mappings().all()
        return [Node.from_row(row) for row in rows]

    @retry_on_connection_error()
    def get_stats(self) -> Dict[str, Any]:
        """Module count, node count and nodes per kind."""
        with self._get_connection() as conn:
            modules = conn.execute(text("SELECT COUNT(*) FROM mib_modules")).scalar() or 0
            total = conn.execute(text("SELECT COUNT(*) FROM mib_nodes")).scalar() or 0
            by_kind = {
                row[0] or "unknown": int(row[1])
                for row in conn.execute(
                    text("SELECT kind, COUNT(*) FROM mib_nodes GROUP BY kind")
                )
            }
        return {"modules": int(modules), "total_nodes": int(total), "by_kind": by_kind}

    def is_empty(self) -> bool:
        return self.get_stats()["total_nodes"] == 0

    @retry_on_connection_error()
    def nodes_to_df(self, module: Optional[str] = None) -> pd.DataFrame:
        """All nodes (optionally one module) as a DataFrame."""
        sql = f"SELECT {NODE_COLUMNS} FROM mib_nodes n JOIN mib_modules m ON m.id = n.module_id"
        params = {}
        if module:
            sql += " WHERE m.name = :module"
            params["module"] = module
        sql += " ORDER BY n.oid"
        with self._get_connection() as conn:
            return pd.read_sql_query(text(sql), conn, params=params)
