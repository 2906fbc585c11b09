"""Codebase snapshot: a pre-order directory walk with identifier extraction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Sequence

from .config import TRACE
from .errors import SnapshotError
from .extract import ExtractorRegistry
from .ignore import should_ignore
from .schema import CodebaseContext, SnapshotNode

__all__ = ["EXCLUDED_NOTE", "SnapshotBuilder"]

LOGGER = logging.getLogger(__name__)

EXCLUDED_NOTE = "excluded entries exist but are not expanded"


@dataclass(slots=True)
class _Draft:
    """Mutable node used while walking; frozen into ``SnapshotNode`` at the end."""

    is_directory: bool = False
    children: Dict[str, "_Draft"] = field(default_factory=dict)
    excluded: bool = False
    identifiers: Optional[set[str]] = None

    def freeze(self) -> SnapshotNode:
        if self.excluded:
            return SnapshotNode.excluded_marker(is_directory=self.is_directory)
        if self.is_directory:
            return SnapshotNode(
                is_directory=True,
                children={name: child.freeze() for name, child in sorted(self.children.items())},
            )
        return SnapshotNode.file(self.identifiers or set())


class SnapshotBuilder:
    """Walks a root directory into a tree of snapshot nodes."""

    def __init__(
        self,
        registry: Optional[ExtractorRegistry] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry or ExtractorRegistry()
        self._logger = logger or LOGGER
        self.excluded_count = 0

    def build(self, root: Path, patterns: Sequence[str] = ()) -> SnapshotNode:
        """Return the directory node for ``root``.

        Only an unreadable root raises; every per-entry problem degrades to an
        empty node and a log line.
        """
        root = Path(root)
        try:
            top_level = _list_dir(root)
        except OSError as error:
            raise SnapshotError(f"Cannot read snapshot root {root}: {error}") from error

        tree = _Draft(is_directory=True)
        self.excluded_count = 0
        stack: list[tuple[os.DirEntry[str], str]] = [
            (entry, entry.name) for entry in reversed(top_level)
        ]
        while stack:
            entry, relative = stack.pop()
            node = _node_at(tree, relative)
            is_directory = entry.is_dir(follow_symlinks=False)

            if should_ignore(relative, patterns):
                node.is_directory = is_directory
                node.excluded = True
                self.excluded_count += 1
                self._logger.debug("Excluded %s", relative)
                continue

            if is_directory:
                node.is_directory = True
                try:
                    children = _list_dir(Path(entry.path))
                except OSError as error:
                    self._logger.warning("Cannot read directory %s: %s", relative, error)
                    continue
                stack.extend((child, f"{relative}/{child.name}") for child in reversed(children))
            else:
                node.identifiers = self._identifiers(Path(entry.path), relative)
            self._logger.log(TRACE, "Added %s to snapshot", relative)

        return tree.freeze()

    def build_context(self, root: Path, patterns: Sequence[str] = ()) -> CodebaseContext:
        """Wrap the snapshot of ``root`` in a context keyed by the root path."""
        root = Path(root)
        node = self.build(root, patterns)
        notes = [EXCLUDED_NOTE] if self.excluded_count else []
        return CodebaseContext(snapshot={root.as_posix(): node}, notes=notes)

    def _identifiers(self, path: Path, relative: str) -> set[str]:
        if not self._registry.supports(relative):
            self._logger.log(TRACE, "No extractor for %s", relative)
            return set()
        try:
            source = path.read_bytes()
        except OSError as error:
            self._logger.warning("Cannot read %s: %s", relative, error)
            return set()
        try:
            return self._registry.extract(relative, source, logger=self._logger)
        except ValueError as error:
            self._logger.log(TRACE, "Failed to parse %s: %s", relative, error)
            return set()


def _list_dir(path: Path) -> list[os.DirEntry[str]]:
    with os.scandir(path) as entries:
        return sorted(entries, key=lambda entry: entry.name)


def _node_at(tree: _Draft, relative: str) -> _Draft:
    """Return the draft for ``relative``, creating missing ancestors as directories."""
    parts = relative.split("/")
    node = tree
    for part in parts[:-1]:
        child = node.children.get(part)
        if child is None:
            child = _Draft(is_directory=True)
            node.children[part] = child
        node = child
    name = parts[-1]
    leaf = node.children.get(name)
    if leaf is None:
        leaf = _Draft()
        node.children[name] = leaf
    return leaf
