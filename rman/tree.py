"""Directory tree derived from manifest file paths, for enumeration and display."""

from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

from rman.types import File


class DirectoryNode:
    """
    A directory of the manifest virtual tree.

    Attributes:
        name: Directory name ("" for the root)
        path: Full path from the root ("" for the root)
        directories: Subdirectories, by name
        files: Files directly in this directory, by name
    """

    def __init__(self, name: str = "", path: str = ""):
        self.name = name
        self.path = path
        self.directories: Dict[str, 'DirectoryNode'] = {}
        self.files: Dict[str, File] = {}

    def subdirectory(self, name: str) -> 'DirectoryNode':
        node = self.directories.get(name)
        if node is None:
            path = f"{self.path}/{name}" if self.path else name
            node = DirectoryNode(name, path)
            self.directories[name] = node
        return node

    def find(self, path: str) -> Optional[Union['DirectoryNode', File]]:
        """Return the directory or file at a path relative to this node."""
        node: DirectoryNode = self
        parts = [p for p in path.split('/') if p]
        for i, part in enumerate(parts):
            if i == len(parts) - 1 and part in node.files:
                return node.files[part]
            child = node.directories.get(part)
            if child is None:
                return None
            node = child
        return node

    def walk(self) -> Iterator[Tuple['DirectoryNode', Dict[str, File]]]:
        """Yield `(directory, files)` pairs, depth first, sorted by name."""
        yield self, self.files
        for name in sorted(self.directories):
            yield from self.directories[name].walk()

    def iter_files(self) -> Iterator[File]:
        for _, files in self.walk():
            for name in sorted(files):
                yield files[name]

    def total_size(self) -> int:
        return sum(f.size for f in self.iter_files())

    def __repr__(self) -> str:
        return f"DirectoryNode({self.path!r}, dirs={len(self.directories)}, files={len(self.files)})"


def build_tree(files: Iterable[File]) -> DirectoryNode:
    root = DirectoryNode()
    for file in files:
        parts = file.path.split('/')
        node = root
        for part in parts[:-1]:
            if part:
                node = node.subdirectory(part)
        node.files[parts[-1]] = file
    return root
