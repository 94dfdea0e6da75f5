"""Logging setup shared by the manifest tools and the downloader."""

import logging
import os
import re
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(run_label)s%(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MASK = '***MASKED***'

# Signed CDN URLs and proxy credentials
_SECRET_PATTERNS = [
    re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE),
    re.compile(r'(bearer\s+)([^\s,}\'\"]+)', re.IGNORECASE),
    re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'}\s,&]+)', re.IGNORECASE),
    re.compile(r'([?&](?:signature|sig|key-pair-id|policy|x-amz-signature)=)([^&\s]+)', re.IGNORECASE),
    re.compile(r'(://[^/:@\s]+:)([^@/\s]+)(?=@)'),
]


def mask_secrets(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + MASK, text)
    return text


class SensitiveDataFilter(logging.Filter):
    """Masks credentials in the message and its string arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_secrets(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._mask(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._mask(arg) for arg in record.args)
        return True

    @staticmethod
    def _mask(value):
        return mask_secrets(value) if isinstance(value, str) else value


class RunIdFilter(logging.Filter):
    """Adds `run_label` (`[<run id>] - ` or empty) to every record."""

    def __init__(self, run_id: Optional[str] = None):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_label = f'[{self.run_id}] - ' if self.run_id else ''
        return True


def setup_logging(
    component_name: str,
    log_level: Optional[str] = None,
    run_id: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging configuration for a component.

    Args:
        component_name: Logger name to configure (e.g., 'downloader', 'rman')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO
        run_id: Optional identifier of a materialization run, shown in every line

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO')
    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(RunIdFilter(run_id))
    handler.addFilter(SensitiveDataFilter())

    logger.addHandler(handler)
    logger.propagate = False
    return logger


def set_run_id(logger: logging.Logger, run_id: Optional[str]) -> None:
    """Change the run id shown by the handlers installed by `setup_logging`."""
    for handler in logger.handlers:
        for log_filter in handler.filters:
            if isinstance(log_filter, RunIdFilter):
                log_filter.run_id = run_id
