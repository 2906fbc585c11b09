"""Ignore-pattern loading and matching for the snapshot walk."""

from __future__ import annotations

import fnmatch
import logging
import posixpath
from pathlib import Path
from typing import Iterable, Sequence

__all__ = [
    "DEFAULT_IGNORE_PATTERNS",
    "load_ignore_patterns",
    "render_ignore_file",
    "should_ignore",
]

LOGGER = logging.getLogger(__name__)

# Starter list written by ``ctxsync init``; never applied implicitly.
DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    ".git",
    ".svn",
    ".hg",
    ".DS_Store",
    "__MACOSX",
    "__pycache__",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
    ".venv",
    "node_modules",
    "dist",
    "Debug",
    "Release",
    ".vs",
    ".idea",
    ".vscode",
    "cmake-build-debug",
    "target",
    ".gradle",
    ".classpath",
    ".project",
    ".bundle",
    "vendor/bundle",
    "bin",
    "pkg",
    "docker-compose.override.yml",
    ".dockerignore",
    ".env",
    "logs",
    "coverage",
)


def load_ignore_patterns(
    ignore_file: Path,
    *,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Read newline-delimited patterns, skipping blanks, comments and repeats.

    A missing or unreadable file is not an error: it is logged and treated as
    "ignore nothing".
    """
    log = logger or LOGGER
    try:
        text = ignore_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("Ignore file not found: %s", ignore_file)
        return []
    except (OSError, UnicodeDecodeError) as error:
        log.warning("Failed to load ignore file %s: %s", ignore_file, error)
        return []

    patterns: list[str] = []
    seen: set[str] = set()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line in seen:
            continue
        seen.add(line)
        patterns.append(line)
    log.debug("Loaded %d ignore pattern(s) from %s", len(patterns), ignore_file)
    return patterns


def should_ignore(path: str, patterns: Sequence[str]) -> bool:
    """Return True when ``path`` is excluded by any of ``patterns``.

    A pattern matches when it glob-matches the base name, or when it names
    the path itself or one of its leading directories (``vendor/bundle``
    covers ``vendor/bundle/x.rb`` but ``bin`` leaves ``binary.go`` alone).
    """
    if not patterns:
        return False
    normalised = path.replace("\\", "/")
    base_name = posixpath.basename(normalised.rstrip("/"))
    for pattern in patterns:
        if fnmatch.fnmatchcase(base_name, pattern):
            return True
        prefix = pattern.rstrip("/")
        if prefix and (normalised == prefix or normalised.startswith(prefix + "/")):
            return True
    return False


def render_ignore_file(patterns: Iterable[str] = DEFAULT_IGNORE_PATTERNS) -> str:
    """Render ``patterns`` as ignore-file text with a short header."""
    lines = ["# Paths excluded from the ctxsync snapshot (glob on name or leading directories)."]
    lines.extend(patterns)
    return "\n".join(lines) + "\n"
