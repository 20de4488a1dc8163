#!/usr/bin/env python3
"""
MIB Service - Ingestion Orchestrator
Coordinates loader -> conversion -> repository writes -> module statistics,
and exposes the read surface used by the tree view and bookmark layers.
"""

import asyncio
import json
import warnings
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from core.compiler import get_compiler_handle
from core.exceptions import DependencyMissingWarning, MibError
from core.models import ModuleStats, ModuleSummary, Node, NodeKind, TreeNode
from core.parser import ConversionResult, LoadResult, MibLoader, convert_symbols
from core.tree_builder import TreeBuilder, count_nodes, tree_to_dict
from services.db_service import NodeRepository
from services.oid_resolver_service import OIDResolverService
from utils.logger import get_logger


class MibService:
    """
    Single entry point for MIB ingestion and lookup.

    The compiler keeps process-wide state, so every load runs on one
    dedicated worker thread; callers block on (or await) the result. Reads
    go straight to the repository.
    """

    def __init__(self, config, repository: Optional[NodeRepository] = None, compiler=None):
        self.config = config
        self.logger = get_logger(self.__class__.__name__)

        self.repository = repository or NodeRepository(config)
        self.compiler = compiler or get_compiler_handle(
            config.parser.compiled_dir, config.get_all_mib_search_paths()
        )
        self.loader = MibLoader(
            self.compiler,
            config.parser.scratch_dir,
            max_file_size=config.parser.max_file_size_mb * 1024 * 1024,
        )
        self.tree_builder = TreeBuilder()
        self.resolver = OIDResolverService(self.repository)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mib-loader")
        # Modules removed through delete_module; kept out of the store until loaded again
        self._deleted: set = set()

        self.stats = {
            "files_processed": 0,
            "files_failed": 0,
            "sanitized_loads": 0,
            "nodes_written": 0,
            "failed_files": [],  # List of {file, error}
            "missing_dependencies": [],  # Module names seen missing
        }

        if config.parser.preload_standard_mibs:
            self.preload_standard_mibs()

    # ============================================
    # INGESTION
    # ============================================

    def load_module(self, path) -> str:
        """
        Load a MIB file and persist its nodes.

        Returns:
            Name of the loaded module

        Raises:
            MibLoadError: the file could not be loaded (see its attempts)
            StorageError: the batch write failed and was rolled back
        """
        return self._executor.submit(self._ingest, str(path)).result()

    async def load_module_async(self, path) -> str:
        """Async wrapper; runs the ingestion on the loader worker."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._ingest, str(path))

    def load_modules(self, paths: Iterable) -> Dict[str, Any]:
        """
        Load several files; failures are reported, not raised.

        Returns:
            {"loaded": [module names], "failed": [{"file", "error"}]}
        """
        report = {"loaded": [], "failed": []}
        for path in paths:
            try:
                report["loaded"].append(self.load_module(path))
            except MibError as e:
                report["failed"].append({"file": str(path), "error": str(e)})
        self.logger.info(f"Batch load: {len(report['loaded'])} loaded, {len(report['failed'])} failed")
        return report

    def _ingest(self, path: str) -> str:
        try:
            result = self.loader.load(path)
        except MibError as e:
            self.stats["files_failed"] += 1
            self.stats["failed_files"].append({"file": path, "error": str(e)})
            raise

        if result.sanitized:
            self.stats["sanitized_loads"] += 1
        self._deleted.discard(result.module_name)

        self._load_standard_modules()

        module_id = self.repository.upsert_module(result.module_name, result.source_path)
        missing = self._find_missing_imports(result)

        conversion, type_counts = self._collect_nodes()
        written = self.repository.upsert_nodes_batch(conversion.nodes, default_module_id=module_id)

        module_stats = self.compute_module_stats(conversion.nodes, type_counts)
        module_stats.setdefault(
            result.module_name, ModuleStats(type_count=type_counts.get(result.module_name, 0))
        )
        for name, stats in module_stats.items():
            self.repository.update_module_stats(name, stats)

        skipped = conversion.skipped.get(result.module_name, 0)
        self.repository.update_module_metadata(result.module_name, skipped, missing)

        self.resolver.clear_cache()
        self.stats["files_processed"] += 1
        self.stats["nodes_written"] += written

        self.logger.info(
            f"✅ Loaded {result.module_name}: {module_stats[result.module_name].node_count} nodes, "
            f"{skipped} skipped, {len(missing)} missing imports"
        )
        return result.module_name

    def _load_standard_modules(self) -> List[str]:
        return [name for name in self.config.parser.standard_mibs if self.compiler.load_builtin(name)]

    def _find_missing_imports(self, result: LoadResult) -> List[str]:
        """Imported modules not in the repository yet, sorted."""
        missing = sorted(
            {
                name
                for name in result.imports
                if name != result.module_name and not self.repository.module_exists(name)
            }
        )
        for name in missing:
            warnings.warn(
                f"{result.module_name} imports from {name}, which is not loaded",
                DependencyMissingWarning,
                stacklevel=2,
            )
            if name not in self.stats["missing_dependencies"]:
                self.stats["missing_dependencies"].append(name)
        if missing:
            self.logger.warning(f"{result.module_name}: missing imports {', '.join(missing)}")
        return missing

    def _collect_nodes(self) -> Tuple[ConversionResult, Dict[str, int]]:
        """Convert every module the compiler holds except deleted ones, de-duplicating by OID."""
        collected = ConversionResult()
        type_counts: Dict[str, int] = {}
        seen: set = set()

        for module in self.compiler.loaded_modules():
            if module in self._deleted:
                continue
            part = convert_symbols(self.compiler.module_symbols(module), seen)
            collected.nodes.extend(part.nodes)
            for name, count in part.skipped.items():
                collected.skipped[name] = collected.skipped.get(name, 0) + count
            type_counts[module] = self.compiler.module_type_count(module)

        return collected, type_counts

    @staticmethod
    def compute_module_stats(nodes: List[Node], type_counts: Optional[Dict[str, int]] = None) -> Dict[str, ModuleStats]:
        """Per-module node counts by kind."""
        type_counts = type_counts or {}
        if not nodes:
            return {}

        df = pd.DataFrame([{"module": n.module, "kind": n.kind.value} for n in nodes])
        counts = pd.crosstab(df["module"], df["kind"])

        stats = {}
        for module, row in counts.iterrows():
            stats[module] = ModuleStats(
                node_count=int(row.sum()),
                scalar_count=int(row.get(NodeKind.SCALAR.value, 0)),
                table_count=int(row.get(NodeKind.TABLE.value, 0)),
                column_count=int(row.get(NodeKind.COLUMN.value, 0)),
                type_count=int(type_counts.get(module, 0)),
            )
        return stats

    def preload_standard_mibs(self) -> List[str]:
        """Load the configured standard modules and persist their nodes."""
        return self._executor.submit(self._preload).result()

    def _preload(self) -> List[str]:
        loaded = self._load_standard_modules()
        self._deleted.difference_update(loaded)
        for name in loaded:
            if not self.repository.module_exists(name):
                self.repository.upsert_module(name, "")

        conversion, type_counts = self._collect_nodes()
        self.repository.upsert_nodes_batch(conversion.nodes)
        for name, stats in self.compute_module_stats(conversion.nodes, type_counts).items():
            self.repository.update_module_stats(name, stats)

        self.resolver.clear_cache()
        self.logger.info(f"Preloaded {len(loaded)} standard modules: {', '.join(loaded)}")
        return loaded

    def cleanup_scratch(self) -> int:
        """Remove sanitized copies; runs on the loader worker."""
        removed = self._executor.submit(self.loader.cleanup_scratch).result()
        self.logger.info(f"Removed {removed} sanitized scratch file(s)")
        return removed

    # ============================================
    # READ SURFACE
    # ============================================

    def get_tree(self, module: Optional[str] = None) -> List[TreeNode]:
        """Whole store, or one module, as a sorted tree."""
        if module:
            self.repository.get_module_summary(module)
        return self.tree_builder.build(self.repository.get_all_nodes(module))

    def get_node(self, oid: str) -> Node:
        return self.repository.get_node(oid)

    def get_node_by_name(self, name: str, module: Optional[str] = None) -> Node:
        return self.repository.get_node_by_name(name, module)

    def get_ancestors(self, oid: str) -> List[Node]:
        return self.repository.get_ancestors(oid)

    def get_children(self, oid: str) -> List[Node]:
        return self.repository.get_children(oid)

    def search(self, query: str, limit: int = 100) -> List[Node]:
        return self.repository.search_nodes(query, limit)

    def list_modules(self) -> List[ModuleSummary]:
        return self.repository.list_modules()

    def resolve_name(self, oid: str) -> str:
        return self.resolver.resolve_name(oid)

    def get_module_details(self, name: str) -> Dict[str, Any]:
        summary = self.repository.get_module_summary(name)
        tree = self.get_tree(name)
        return {
            "summary": summary.to_dict(),
            "tree": tree_to_dict(tree),
            "stats": {
                "nodes": summary.node_count,
                "scalars": summary.scalar_count,
                "tables": summary.table_count,
                "columns": summary.column_count,
                "types": summary.type_count,
                "skipped": summary.skipped_nodes,
                "tree_nodes": count_nodes(tree),
            },
            "missing_count": len(summary.missing_imports),
        }

    def delete_module(self, name: str) -> None:
        """
        Remove a module and its nodes.

        The compiler cannot unload it, so later ingestions skip it until the
        module is loaded again.
        """
        self._executor.submit(self._delete, name).result()

    def _delete(self, name: str) -> None:
        self.repository.delete_module(name)
        self._deleted.add(name)
        self.resolver.clear_cache()

    def export_tree(self, path, module: Optional[str] = None) -> str:
        """Write the tree as JSON and return the file path."""
        export_path = Path(path)
        export_path.parent.mkdir(parents=True, exist_ok=True)
        with open(export_path, "w", encoding="utf-8") as f:
            json.dump(tree_to_dict(self.get_tree(module)), f, indent=2)
        self.logger.info(f"Exported tree to {export_path}")
        return str(export_path)

    def get_stats(self) -> Dict[str, Any]:
        return self.repository.get_stats()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "service": {**self.stats, "failed_files_count": len(self.stats["failed_files"])},
            "compiler": dict(self.compiler.stats),
            "repository": self.repository.get_statistics(),
            "resolver": self.resolver.get_stats(),
        }

    def close(self):
        self._executor.shutdown(wait=True)
        self.repository.close()
