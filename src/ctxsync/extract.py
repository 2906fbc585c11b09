"""Per-language identifier extraction over tree-sitter syntax trees."""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol, Sequence

import tree_sitter_go
import tree_sitter_javascript
import tree_sitter_python
import tree_sitter_typescript
from tree_sitter import Language, Parser

from .errors import UnsupportedLanguageError

__all__ = [
    "DEFAULT_LANGUAGES",
    "ExtractorRegistry",
    "IDENTIFIER_KINDS",
    "LanguageSpec",
    "SyntaxNode",
    "extract_identifiers",
]

LOGGER = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s")

IDENTIFIER_KINDS: frozenset[str] = frozenset(
    {"identifier", "field_identifier", "package_identifier"}
)


class SyntaxNode(Protocol):
    """Subset of the tree-sitter node API the extractor relies on."""

    @property
    def type(self) -> str: ...

    @property
    def is_named(self) -> bool: ...

    @property
    def start_byte(self) -> int: ...

    @property
    def end_byte(self) -> int: ...

    @property
    def named_children(self) -> Sequence["SyntaxNode"]: ...


@dataclass(frozen=True, slots=True)
class LanguageSpec:
    """Capability entry: how to parse one language and which nodes to harvest."""

    name: str
    loader: Callable[[], Any]
    declaration_kinds: frozenset[str]
    identifier_kinds: frozenset[str] = IDENTIFIER_KINDS

    @property
    def trigger_kinds(self) -> frozenset[str]:
        """Node kinds that start a harvest and stop further descent."""
        return self.declaration_kinds | self.identifier_kinds


GO = LanguageSpec(
    name="go",
    loader=tree_sitter_go.language,
    declaration_kinds=frozenset(
        {"function_declaration", "method_declaration", "type_declaration"}
    ),
)

JAVASCRIPT = LanguageSpec(
    name="javascript",
    loader=tree_sitter_javascript.language,
    declaration_kinds=frozenset(
        {
            "function_declaration",
            "generator_function_declaration",
            "class_declaration",
            "method_definition",
        }
    ),
    identifier_kinds=IDENTIFIER_KINDS | {"property_identifier"},
)

_TS_DECLARATIONS = JAVASCRIPT.declaration_kinds | {
    "interface_declaration",
    "type_alias_declaration",
    "enum_declaration",
}

TYPESCRIPT = LanguageSpec(
    name="typescript",
    loader=tree_sitter_typescript.language_typescript,
    declaration_kinds=_TS_DECLARATIONS,
    identifier_kinds=IDENTIFIER_KINDS | {"property_identifier", "type_identifier"},
)

TSX = LanguageSpec(
    name="tsx",
    loader=tree_sitter_typescript.language_tsx,
    declaration_kinds=_TS_DECLARATIONS,
    identifier_kinds=TYPESCRIPT.identifier_kinds,
)

PYTHON = LanguageSpec(
    name="python",
    loader=tree_sitter_python.language,
    declaration_kinds=frozenset({"function_definition", "class_definition"}),
)

DEFAULT_LANGUAGES: Mapping[str, LanguageSpec] = {
    ".go": GO,
    ".js": JAVASCRIPT,
    ".jsx": JAVASCRIPT,
    ".ts": TYPESCRIPT,
    ".tsx": TSX,
    ".py": PYTHON,
}


def extract_identifiers(root: SyntaxNode, source: bytes, language: LanguageSpec) -> set[str]:
    """Collect unique identifier text found under declaration nodes.

    Traversal is depth-first over named nodes. When a node of a trigger kind
    is reached, every nested identifier leaf is harvested and the walk does
    not descend past that node.
    """
    triggers = language.trigger_kinds
    found: set[str] = set()
    stack: list[SyntaxNode] = [root]
    while stack:
        node = stack.pop()
        if node.is_named and node.type in triggers:
            if len(_node_text(node, source)) > 1:
                found.update(_collect_leaves(node, source, language.identifier_kinds))
            continue
        stack.extend(reversed(list(node.named_children)))
    return found


def _collect_leaves(node: SyntaxNode, source: bytes, kinds: frozenset[str]) -> Iterable[str]:
    stack: list[SyntaxNode] = [node]
    while stack:
        current = stack.pop()
        if current.is_named and current.type in kinds:
            text = _node_text(current, source)
            if len(text) > 1 and not _WHITESPACE_RE.search(text):
                yield text
        stack.extend(reversed(list(current.named_children)))


def _node_text(node: SyntaxNode, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


@dataclass(slots=True)
class ExtractorRegistry:
    """Extension-keyed capability table with a per-language parser cache."""

    languages: Mapping[str, LanguageSpec] = field(default_factory=lambda: dict(DEFAULT_LANGUAGES))
    default_language: LanguageSpec = GO
    _parsers: Dict[str, Parser] = field(default_factory=dict, init=False, repr=False)

    def language_for(self, path: str) -> LanguageSpec:
        """Resolve the language capability for ``path`` or raise."""
        base_name = posixpath.basename(path.replace("\\", "/"))
        if base_name.startswith("Dockerfile"):
            return self.default_language
        _, extension = posixpath.splitext(base_name)
        spec = self.languages.get(extension)
        if spec is None:
            raise UnsupportedLanguageError(path)
        return spec

    def supports(self, path: str) -> bool:
        """Return True when an extractor exists for ``path``."""
        try:
            self.language_for(path)
        except UnsupportedLanguageError:
            return False
        return True

    def parser_for(self, language: LanguageSpec) -> Parser:
        """Return a cached parser configured for ``language``."""
        parser = self._parsers.get(language.name)
        if parser is None:
            parser = Parser(Language(language.loader()))
            self._parsers[language.name] = parser
        return parser

    def extract(self, path: str, source: bytes, *, logger: Optional[logging.Logger] = None) -> set[str]:
        """Parse ``source`` with the grammar registered for ``path``."""
        language = self.language_for(path)
        tree = self.parser_for(language).parse(source)
        identifiers = extract_identifiers(tree.root_node, source, language)
        (logger or LOGGER).debug(
            "Extracted %d identifier(s) from %s (%s)", len(identifiers), path, language.name
        )
        return identifiers
