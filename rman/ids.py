"""Formatting and parsing of 64-bit manifest, bundle and chunk ids."""

from common.constants import BUNDLE_PATH_TEMPLATE, MANIFEST_PATH_TEMPLATE

MANIFEST_SUFFIX = ".manifest"
_ID_HEX_LEN = 16
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def format_id(value: int) -> str:
    """Format an id as 16 uppercase hex digits."""
    return f"{value:016X}"


def parse_id(text: str) -> int:
    """
    Parse a 16-digit hex id.

    Raises:
        ValueError: If text is not exactly 16 hex digits
    """
    if len(text) != _ID_HEX_LEN or not all(c in _HEX_DIGITS for c in text):
        raise ValueError(f"invalid id: {text!r}")
    return int(text, 16)


def bundle_path(bundle_id: int) -> str:
    return BUNDLE_PATH_TEMPLATE.format(bundle_id=bundle_id)


def manifest_path(manifest_id: int) -> str:
    return MANIFEST_PATH_TEMPLATE.format(manifest_id=manifest_id)


def parse_manifest_id(url: str) -> int:
    """
    Get a manifest id from a path or URL.

    The basename must follow the CDN format: `0123456789ABCDEF.manifest`.

    Raises:
        ValueError: If the basename does not match the expected format
    """
    basename = url.split('?', 1)[0].rstrip('/').rsplit('/', 1)[-1]
    if len(basename) != _ID_HEX_LEN + len(MANIFEST_SUFFIX) or not basename.endswith(MANIFEST_SUFFIX):
        raise ValueError(f"invalid manifest basename: {basename!r}")
    return parse_id(basename[:_ID_HEX_LEN])
