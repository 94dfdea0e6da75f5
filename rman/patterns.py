"""Path patterns with `*` wildcards, used to select manifest files."""

from typing import Iterable


class PathPattern:
    """
    Match a whole path against a pattern where `*` matches any sequence,
    including `/`. A pattern without `*` must equal the path.
    """

    def __init__(self, pattern: str):
        if not pattern:
            raise ValueError("pattern cannot be empty")
        self.pattern = pattern
        parts = pattern.split('*')
        self._prefix = parts[0]
        self._suffix = parts[-1] if len(parts) > 1 else None
        self._middle = parts[1:-1]

    def is_match(self, path: str) -> bool:
        if self._suffix is None:
            return path == self._prefix

        if len(path) < len(self._prefix) + len(self._suffix):
            return False
        if not path.startswith(self._prefix) or not path.endswith(self._suffix):
            return False
        rest = path[len(self._prefix):len(path) - len(self._suffix)]

        for part in self._middle:
            index = rest.find(part)
            if index < 0:
                return False
            rest = rest[index + len(part):]
        return True

    def __repr__(self) -> str:
        return f"PathPattern({self.pattern!r})"


def match_any(patterns: Iterable[PathPattern], path: str) -> bool:
    return any(pattern.is_match(path) for pattern in patterns)
