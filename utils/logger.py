#!/usr/bin/env python3
"""
Centralized Logging for the MIB engine
Uses standard Python logging with config support
"""

import logging
import logging.config
from pathlib import Path

_logging_configured = False

# Compiler internals are chatty at INFO
NOISY_LOGGERS = {
    'pysmi': 'WARNING',
    'pysnmp': 'WARNING',
    'sqlalchemy.engine': 'WARNING',
}


def setup_logging(config):
    """
    Setup logging from config.

    Args:
        config: Config object with logging section
    """

    global _logging_configured

    if _logging_configured:
        return

    logging_config = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'default': {
                'format': config.logging.format
            }
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': config.logging.level,
                'formatter': 'default',
                'stream': 'ext://sys.stdout'
            }
        },
        'loggers': {
            name: {
                'level': level,
                'handlers': ['console'],
                'propagate': False
            }
            for name, level in NOISY_LOGGERS.items()
        },
        'root': {
            'level': config.logging.level,
            'handlers': ['console'] if config.logging.console else []
        }
    }

    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logging_config['handlers']['file'] = {
            'class': 'logging.handlers.RotatingFileHandler',
            'level': config.logging.level,
            'formatter': 'default',
            'filename': config.logging.file,
            'maxBytes': config.logging.max_file_size_mb * 1024 * 1024,
            'backupCount': config.logging.backup_count,
            'encoding': 'utf-8'
        }
        logging_config['root']['handlers'].append('file')

        for logger_name in NOISY_LOGGERS:
            logging_config['loggers'][logger_name]['handlers'].append('file')

    logging.config.dictConfig(logging_config)

    logger = logging.getLogger('mibtree')
    logger.info(f"✅ Logging configured: level={config.logging.level}, file={config.logging.file or 'console only'}")

    _logging_configured = True


def get_logger(name: str):
    """
    Get logger instance.

    Thin wrapper around logging.getLogger() so every module asks for
    loggers the same way.

    Args:
        name: Logger name (usually the class name or __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
