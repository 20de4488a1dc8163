#!/usr/bin/env python3
"""
Configuration Management for the MIB engine
Centralized configuration handling with validation
"""

import base64
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from utils.logger import get_logger


# Platform directories where net-snmp and distro packages drop MIB files
PLATFORM_MIB_DIRS = ["/usr/share/snmp/mibs", "/usr/share/mibs", "/var/lib/mibs"]

DEFAULT_STANDARD_MIBS = [
    "RFC1155-SMI",
    "RFC-1212",
    "SNMPv2-SMI",
    "SNMPv2-TC",
    "SNMPv2-CONF",
]


def init_dataclass_from_dict(dataclass_type, config_dict: Dict[str, Any]):
    """
    Initialize a dataclass from a config dictionary.
    Only uses fields that exist in the dataclass definition.

    Args:
        dataclass_type: The dataclass type to initialize
        config_dict: Dictionary with configuration values

    Returns:
        Initialized dataclass instance
    """
    valid_fields = {f.name for f in fields(dataclass_type)}

    filtered_config = {
        key: value
        for key, value in (config_dict or {}).items()
        if key in valid_fields
    }

    return dataclass_type(**filtered_config)


@dataclass
class ProjectConfig:
    """Project configuration."""
    name: str = "mibtree"
    version: str = "1.0.0"


@dataclass
class DatabaseConfig:
    """Database configuration."""
    backend: str = "sqlite"  # 'sqlite' | 'mysql'
    sqlite_path: str = "./data/mibs.db"

    # MySQL settings (backend == 'mysql')
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    password_base64: str = ""
    name: str = "mibtree"

    # Connection pool settings
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600
    pool_pre_ping: bool = True
    echo: bool = False

    # Retry settings
    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class ParserConfig:
    """Parser / loader configuration."""
    compiled_dir: str = "./data/compiled_mibs"
    scratch_dir: str = "./data/sanitized"
    mib_search_dirs: List[str] = field(default_factory=list)
    include_platform_dirs: bool = True
    max_file_size_mb: int = 10
    standard_mibs: List[str] = field(default_factory=lambda: list(DEFAULT_STANDARD_MIBS))
    preload_standard_mibs: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_file_size_mb: int = 10
    backup_count: int = 5


class Config:
    """Centralized configuration management."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration from file or defaults."""

        self.config_path = config_path or self._find_config_file()

        self.logger = get_logger(self.__class__.__name__)
        self.raw_config = self._load_config()

        self.project = self._init_project_config()
        self.database = self._init_database_config()
        self.parser = self._init_parser_config()
        self.logging = self._init_logging_config()

        self.version = self.project.version

        self._create_directories()

    def reload(self):
        """
        Reload configuration from file.

        Returns:
            self (for chaining)
        """
        self.logger.info(f"Reloading configuration from {self.config_path}")

        self.raw_config = self._load_config()
        self.project = self._init_project_config()
        self.database = self._init_database_config()
        self.parser = self._init_parser_config()
        self.logging = self._init_logging_config()
        self.version = self.project.version
        self._create_directories()

        self.logger.info("✅ Configuration reloaded successfully")
        return self

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        search_paths = [
            Path("./config/config.yaml"),
            Path("./config.yaml"),
            Path("../config/config.yaml")
        ]

        for path in search_paths:
            if path.exists():
                return str(path)

        return "./config/config.yaml"

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file."""
        if not os.path.exists(self.config_path):
            self.logger.warning(f"Config file not found: {self.config_path}, using defaults")
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                if self.config_path.endswith((".yaml", ".yml")):
                    config = yaml.safe_load(f) or {}
                elif self.config_path.endswith(".json"):
                    config = json.load(f)
                else:
                    config = {}

                return config

        except Exception as e:
            self.logger.error(f"Failed to load config: {e}", exc_info=True)
            return {}

    def _init_project_config(self) -> ProjectConfig:
        """Initialize project configuration."""
        return init_dataclass_from_dict(ProjectConfig, self.raw_config.get("project", {}))

    def _init_parser_config(self) -> ParserConfig:
        """Initialize parser configuration."""
        config = init_dataclass_from_dict(ParserConfig, self.raw_config.get("parser", {}))

        # Expand and filter paths
        config.mib_search_dirs = [
            os.path.abspath(os.path.expanduser(d))
            for d in config.mib_search_dirs
            if os.path.exists(os.path.expanduser(d))
        ]

        if config.max_file_size_mb <= 0:
            self.logger.warning(f"Invalid max_file_size_mb: {config.max_file_size_mb}, using 10")
            config.max_file_size_mb = 10

        return config

    def _init_database_config(self) -> DatabaseConfig:
        """Initialize database configuration."""
        cfg = self.raw_config.get("database", {}) or {}

        config = init_dataclass_from_dict(DatabaseConfig, cfg)

        if config.backend not in ("sqlite", "mysql"):
            self.logger.warning(f"Unknown database backend: {config.backend}, using 'sqlite'")
            config.backend = "sqlite"

        # Password priority: explicit, environment, base64
        if not config.password:
            if os.environ.get("DB_PASSWORD"):
                config.password = os.environ["DB_PASSWORD"]
                self.logger.debug("Using database password from environment variable")
            elif cfg.get("password_base64"):
                try:
                    config.password = base64.b64decode(cfg["password_base64"]).decode("utf-8")
                    self.logger.debug("Using database password from config (base64)")
                except Exception as e:
                    self.logger.warning(f"Failed to decode password: {e}")

        return config

    def _init_logging_config(self) -> LoggingConfig:
        """Initialize logging configuration."""
        return init_dataclass_from_dict(LoggingConfig, self.raw_config.get("logging", {}))

    def _create_directories(self):
        """Create required directories if they don't exist."""
        directories = [
            self.parser.compiled_dir,
            self.parser.scratch_dir,
        ]

        if self.database.backend == "sqlite":
            directories.append(os.path.dirname(self.database.sqlite_path))

        if self.logging.file:
            directories.append(os.path.dirname(self.logging.file))

        for directory in directories:
            if directory:
                try:
                    Path(directory).mkdir(parents=True, exist_ok=True)
                except Exception as e:
                    self.logger.warning(f"Failed to create directory {directory}: {e}")

    def get_all_mib_search_paths(self) -> List[str]:
        """Get all MIB search paths (configured first, then platform dirs)."""
        paths = list(self.parser.mib_search_dirs)

        if self.parser.include_platform_dirs:
            paths.extend(PLATFORM_MIB_DIRS)

        seen = set()
        unique_paths = []
        for p in paths:
            if p not in seen and os.path.isdir(p):
                unique_paths.append(p)
                seen.add(p)

        return unique_paths

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "version": self.version,
            "project": asdict(self.project),
            "database": {
                **asdict(self.database),
                "password": "***" if self.database.password else "",
            },
            "parser": asdict(self.parser),
            "logging": asdict(self.logging),
        }

    def save(self, path: Optional[str] = None):
        """Save configuration to file."""
        save_path = path or self.config_path

        config_dict = self.to_dict()
        config_dict["database"].pop("password", None)
        if self.database.password:
            config_dict["database"]["password_base64"] = base64.b64encode(
                self.database.password.encode()
            ).decode("utf-8")

        Path(save_path).parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w", encoding="utf-8") as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

        self.logger.info(f"Configuration saved to {save_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration and return list of issues.

        Returns:
            List of validation issues (empty if valid)
        """
        issues = []

        if self.database.backend == "mysql" and not self.database.name:
            issues.append("Database name not specified")

        if self.database.backend == "sqlite" and not self.database.sqlite_path:
            issues.append("SQLite path not specified")

        for label, directory in (
            ("compiled", self.parser.compiled_dir),
            ("scratch", self.parser.scratch_dir),
        ):
            try:
                Path(directory).mkdir(parents=True, exist_ok=True)
            except Exception as e:
                issues.append(f"Cannot create {label} directory: {e}")

        if self.logging.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            issues.append(f"Invalid log level: {self.logging.level}")

        return issues

    def __str__(self) -> str:
        return f"Config(version={self.project.version})"

    def __repr__(self) -> str:
        return (
            f"Config(\n"
            f"  project={self.project.name},\n"
            f"  version={self.project.version},\n"
            f"  log_level={self.logging.level},\n"
            f"  database={self.database.backend},\n"
            f"  compiled_dir={self.parser.compiled_dir},\n"
            f")"
        )
