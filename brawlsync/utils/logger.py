"""
brawlsync - Logging Utility
===========================

Loguru based logging shared by the worker, the CLI and the ops API:
- Console and file logging
- Automatic log rotation
- Optional JSON sink for log aggregation
- Secret masking helpers
"""

import re
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from brawlsync.core.config import Config


_CREDENTIALS_RE = re.compile(r"://[^/@]*@")


class LoggerSetup:
    """Configure and manage application logging"""

    def __init__(self, config: Optional[dict] = None):
        """
        Initialize logger with configuration

        Args:
            config: ``logging`` section of settings.yaml (loaded when omitted)
        """
        self.config = config if config is not None else self._load_config()
        self._setup_logger()

    def _load_config(self) -> dict:
        section = Config.get("logging")
        if isinstance(section, dict) and section:
            return section
        return self._default_config()

    def _default_config(self) -> dict:
        """Default logging configuration"""
        return {
            'level': 'INFO',
            'format': '<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
            'console': {'enabled': True, 'colorize': True},
            'file': {
                'enabled': True,
                'path': './logs/brawlsync.log',
                'rotation': '100 MB',
                'retention': '14 days',
                'compression': 'zip'
            },
            'error_file': {
                'enabled': True,
                'path': './logs/errors.log',
                'level': 'ERROR',
                'rotation': '50 MB',
                'retention': '30 days'
            },
            'json': {
                'enabled': False,
                'path': './logs/brawlsync.json'
            }
        }

    def _setup_logger(self):
        """Configure loguru logger"""
        logger.remove()

        log_level = self.config.get('level', 'INFO')
        log_format = self.config.get('format') or self._default_config()['format']

        console_config = self.config.get('console', {})
        if console_config.get('enabled', True):
            logger.add(
                sys.stderr,
                format=log_format,
                level=log_level,
                colorize=console_config.get('colorize', True),
                backtrace=True,
                diagnose=False
            )

        file_config = self.config.get('file', {})
        if file_config.get('enabled', True):
            log_path = Path(file_config.get('path', './logs/brawlsync.log'))
            log_path.parent.mkdir(parents=True, exist_ok=True)

            logger.add(
                log_path,
                format=log_format,
                level=log_level,
                rotation=file_config.get('rotation', '100 MB'),
                retention=file_config.get('retention', '14 days'),
                compression=file_config.get('compression', 'zip'),
                backtrace=True,
                diagnose=False
            )

        error_config = self.config.get('error_file', {})
        if error_config.get('enabled', True):
            error_path = Path(error_config.get('path', './logs/errors.log'))
            error_path.parent.mkdir(parents=True, exist_ok=True)

            logger.add(
                error_path,
                format=log_format,
                level=error_config.get('level', 'ERROR'),
                rotation=error_config.get('rotation', '50 MB'),
                retention=error_config.get('retention', '30 days'),
                backtrace=True,
                diagnose=False
            )

        # JSON logging (for log aggregation systems)
        json_config = self.config.get('json', {})
        if json_config.get('enabled', False):
            json_path = Path(json_config.get('path', './logs/brawlsync.json'))
            json_path.parent.mkdir(parents=True, exist_ok=True)

            logger.add(
                json_path,
                format="{message}",
                level=log_level,
                serialize=True,
                rotation=file_config.get('rotation', '100 MB'),
                retention=file_config.get('retention', '14 days')
            )

    def get_logger(self, name: Optional[str] = None):
        """
        Get a logger instance

        Args:
            name: Logger name (usually __name__)

        Returns:
            Configured logger instance
        """
        if name:
            return logger.bind(name=name)
        return logger


_logger_setup = None


def setup_logging(config: Optional[dict] = None):
    """
    Initialize logging system

    Args:
        config: Optional ``logging`` section overriding settings.yaml
    """
    global _logger_setup
    _logger_setup = LoggerSetup(config)
    logger.debug("Logging system initialized")


def get_logger(name: Optional[str] = None):
    """
    Get a logger instance

    Args:
        name: Logger name (usually __name__)

    Example:
        >>> from brawlsync.utils.logger import get_logger
        >>> log = get_logger(__name__)
        >>> log.info("Sweep tick started")
    """
    global _logger_setup
    if _logger_setup is None:
        setup_logging()
    return _logger_setup.get_logger(name)


def mask_url(url: str) -> str:
    """Hide credentials embedded in a connection string."""
    return _CREDENTIALS_RE.sub("://***@", url or "")
