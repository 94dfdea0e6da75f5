"""Configuration management for the downloader."""

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from common.constants import (
    DEFAULT_ASSEMBLY_CONCURRENCY,
    DEFAULT_CDN_URL,
    DEFAULT_CHUNK_STORE_PATH,
    DEFAULT_CONCURRENCY,
    DEFAULT_CONFIG_PATH,
    DEFAULT_INTEGRITY_RETRIES,
    DEFAULT_MAX_RANGE_LENGTH,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RANGE_GAP_THRESHOLD,
    DEFAULT_RETRY_BACKOFF_BASE,
    DEFAULT_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class DownloaderConfig:
    """Manages downloader configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "cdn_url": DEFAULT_CDN_URL,
        "chunk_store_path": DEFAULT_CHUNK_STORE_PATH,
        "timeout": DEFAULT_TIMEOUT_SECONDS,
        "concurrency": DEFAULT_CONCURRENCY,
        "assembly_concurrency": DEFAULT_ASSEMBLY_CONCURRENCY,
        "max_retries": DEFAULT_MAX_RETRIES,
        "retry_backoff_base": DEFAULT_RETRY_BACKOFF_BASE,
        "integrity_retries": DEFAULT_INTEGRITY_RETRIES,
        "range_gap_threshold": DEFAULT_RANGE_GAP_THRESHOLD,
        "max_range_length": DEFAULT_MAX_RANGE_LENGTH,
        "patch": True,
        "verify_cached_chunks": False,
    }

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (default: ~/.rman-sync/config.json)
        """
        self.config_path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser()
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        config = self.DEFAULT_CONFIG.copy()
        if not self.config_path.exists():
            try:
                self.config_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.config_path, 'w') as f:
                    json.dump(config, f, indent=2)
            except OSError as e:
                logger.warning(f"Cannot write default config to {self.config_path}: {e}")
            return config

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("config root must be an object")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error(f"Invalid config file {self.config_path}, using defaults: {e}")
            backup_path = self.config_path.with_suffix('.json.bak')
            try:
                shutil.copy(self.config_path, backup_path)
            except OSError as copy_error:
                logger.warning(f"Cannot back up config file: {copy_error}")
            return config

        config.update(data)
        return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.warning(f"Cannot save config to {self.config_path}: {e}")

    def get_cdn_url(self) -> str:
        return self.data.get('cdn_url', DEFAULT_CDN_URL).rstrip('/')

    def get_chunk_store_path(self) -> Path:
        return Path(self.data.get('chunk_store_path', DEFAULT_CHUNK_STORE_PATH)).expanduser()

    def get_timeout(self) -> float:
        """
        Get request timeout in seconds.

        Returns:
            Timeout value in seconds
        """
        return float(self.data.get('timeout', DEFAULT_TIMEOUT_SECONDS))

    def get_concurrency(self) -> int:
        return max(1, int(self.data.get('concurrency', DEFAULT_CONCURRENCY)))

    def get_assembly_concurrency(self) -> int:
        return max(1, int(self.data.get('assembly_concurrency', DEFAULT_ASSEMBLY_CONCURRENCY)))

    def get_retry_config(self) -> dict:
        """
        Get retry configuration.

        Returns:
            Dictionary with 'max_retries', 'retry_backoff_base' and 'integrity_retries'
        """
        return {
            'max_retries': int(self.data.get('max_retries', DEFAULT_MAX_RETRIES)),
            'retry_backoff_base': float(self.data.get('retry_backoff_base', DEFAULT_RETRY_BACKOFF_BASE)),
            'integrity_retries': int(self.data.get('integrity_retries', DEFAULT_INTEGRITY_RETRIES)),
        }

    def get_range_config(self) -> dict:
        return {
            'range_gap_threshold': int(self.data.get('range_gap_threshold', DEFAULT_RANGE_GAP_THRESHOLD)),
            'max_range_length': int(self.data.get('max_range_length', DEFAULT_MAX_RANGE_LENGTH)),
        }


@dataclass
class MaterializeOptions:
    """
    Tuning of a materialization run.

    Attributes:
        concurrency: Maximum number of range fetches in flight
        assembly_concurrency: Maximum number of destination files written at once
        max_retries: Retries of a range fetch after a network error
        retry_backoff_base: First backoff delay in seconds, doubled on each retry
        integrity_retries: Re-fetches of a chunk failing verification
        range_gap_threshold: Largest gap of unneeded bytes merged into one range
        max_range_length: Upper bound of a merged range
        fetch_timeout: Optional timeout of each fetch attempt, in seconds
        patch: Reuse chunks of existing destination files with a known composition
        verify_chunks: Recompute chunk ids when the hash type is known
        verify_cached_chunks: Also recompute ids of chunks served from the store
        cancel_event: Set by the caller to abandon the run
    """
    concurrency: int = DEFAULT_CONCURRENCY
    assembly_concurrency: int = DEFAULT_ASSEMBLY_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE
    integrity_retries: int = DEFAULT_INTEGRITY_RETRIES
    range_gap_threshold: int = DEFAULT_RANGE_GAP_THRESHOLD
    max_range_length: int = DEFAULT_MAX_RANGE_LENGTH
    fetch_timeout: Optional[float] = None
    patch: bool = True
    verify_chunks: bool = True
    verify_cached_chunks: bool = False
    cancel_event: Optional[asyncio.Event] = None

    @classmethod
    def from_config(cls, config: DownloaderConfig, **overrides) -> 'MaterializeOptions':
        retry = config.get_retry_config()
        ranges = config.get_range_config()
        values = dict(
            concurrency=config.get_concurrency(),
            assembly_concurrency=config.get_assembly_concurrency(),
            max_retries=retry['max_retries'],
            retry_backoff_base=retry['retry_backoff_base'],
            integrity_retries=retry['integrity_retries'],
            range_gap_threshold=ranges['range_gap_threshold'],
            max_range_length=ranges['max_range_length'],
            patch=bool(config.data.get('patch', True)),
            verify_cached_chunks=bool(config.data.get('verify_cached_chunks', False)),
        )
        values.update(overrides)
        return cls(**values)
