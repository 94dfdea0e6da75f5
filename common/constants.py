"""Project-wide constants (CDN layout, manifest format, download defaults)."""

import os

DEFAULT_CDN_URL: str = os.environ.get("RMAN_CDN_URL", "https://lol.dyn.riotcdn.net")
BUNDLE_PATH_TEMPLATE: str = "channels/public/bundles/{bundle_id:016X}.bundle"
MANIFEST_PATH_TEMPLATE: str = "channels/public/releases/{manifest_id:016X}.manifest"

DEFAULT_CHUNK_STORE_PATH: str = os.environ.get("RMAN_CHUNK_STORE_PATH", "/app/data/chunks")
DEFAULT_CONFIG_PATH: str = os.environ.get("RMAN_CONFIG_PATH", "~/.rman-sync/config.json")
COMPOSITION_INDEX_FILENAME: str = ".rman-composition.json"
CHUNK_FILE_SUFFIX: str = ".chk"
TEMP_FILE_SUFFIX: str = ".tmp"

RMAN_MAGIC: bytes = b"RMAN"
RMAN_HEADER_SIZE: int = 28
RMAN_SUPPORTED_VERSION: tuple = (2, 0)
RMAN_REQUIRED_FLAG: int = 1 << 9

DEFAULT_CONCURRENCY: int = 8
DEFAULT_ASSEMBLY_CONCURRENCY: int = 16  # destination files open at once
DEFAULT_TIMEOUT_SECONDS: float = 30.0
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_BACKOFF_BASE: float = 0.5
DEFAULT_INTEGRITY_RETRIES: int = 1
DEFAULT_RANGE_GAP_THRESHOLD: int = 64 * 1024  # 64 KiB of unneeded bytes per merge
DEFAULT_MAX_RANGE_LENGTH: int = 16 * 1024 * 1024  # 16 MiB per range request
