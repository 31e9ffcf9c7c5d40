"""Split source files into semantically bounded chunks.

Files whose extension maps to a tree-sitter grammar are parsed and their
top-level declarations become chunks:

- function/method declarations -> ``function``
- class declarations -> ``class``
- any other top-level node longer than ``min_chunk_chars`` -> ``other``

Everything else falls back to a paragraph splitter that emits one ``block``
chunk per blank-line separated paragraph. Line numbers are 0-indexed;
``end_line`` is exclusive for paragraph chunks and is the row of the last
character for syntax chunks.
"""

from __future__ import annotations

import ctypes
import logging
import os
import re
import sys
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from reposync import config

if TYPE_CHECKING:
    import tree_sitter

# Optional dependencies with graceful fallback
try:
    from tree_sitter import Language, Parser

    _HAS_TREE_SITTER = True
except ImportError:
    Language = None  # type: ignore[assignment, misc]
    Parser = None  # type: ignore[assignment, misc]
    _HAS_TREE_SITTER = False

logger = logging.getLogger(__name__)


@dataclass
class Chunk:
    """A contiguous span of a file's source."""

    content: str
    start_line: int
    end_line: int
    kind: str  # function, class, block, other


# ── Language detection ───────────────────────────────────────────────────

_EXTENSION_TO_LANGUAGE = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",  # TSX needs special parser
    ".mts": "typescript",
    ".cts": "typescript",
    ".go": "go",
    ".rs": "rust",
}


def detect_language(path: str) -> str | None:
    """Detect language from file extension."""
    ext = Path(path).suffix.lower()
    return _EXTENSION_TO_LANGUAGE.get(ext)


# ── Grammar acquisition ──────────────────────────────────────────────────


def _binding_language(language: str) -> Any:
    """Return the raw grammar pointer from an installed binding package."""
    if language == "python":
        import tree_sitter_python

        return tree_sitter_python.language()
    if language == "javascript":
        import tree_sitter_javascript

        return tree_sitter_javascript.language()
    if language in ("typescript", "tsx"):
        import tree_sitter_typescript

        if language == "tsx":
            return tree_sitter_typescript.language_tsx()
        return tree_sitter_typescript.language_typescript()
    if language == "go":
        import tree_sitter_go

        return tree_sitter_go.language()
    if language == "rust":
        import tree_sitter_rust

        return tree_sitter_rust.language()
    return None


def _shared_library_suffix() -> str:
    if sys.platform == "win32":
        return ".dll"
    if sys.platform == "darwin":
        return ".dylib"
    return ".so"


def download_file(url: str, dest: Path, timeout: float = 60.0) -> None:
    """Download *url* to *dest*; urllib follows 301/302 redirects.

    The body is written to a sibling temp file first so a failed transfer
    never leaves a truncated artifact at *dest*.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:  # nosec B310
            with open(partial, "wb") as f:
                while True:
                    block = resp.read(65536)
                    if not block:
                        break
                    f.write(block)
        os.replace(partial, dest)
    finally:
        if partial.exists():
            partial.unlink()


class GrammarCache:
    """Lazily resolve and memoize one tree-sitter Language per language name.

    Resolution order: installed binding package, then a compiled grammar
    library cached in ``grammars_dir``, downloaded first if a URL is known
    for the language. Failures are memoized as ``None`` so each language is
    attempted at most once per instance.

    No download URLs are built in; they come from the ``grammar_urls``
    object in ``config.json``, so by default only installed bindings and
    libraries already present in ``grammars_dir`` are used.
    """

    def __init__(
        self,
        grammars_dir: Path | None = None,
        urls: dict[str, str] | None = None,
        downloader: Callable[[str, Path], None] = download_file,
    ) -> None:
        self.grammars_dir = grammars_dir or config.get_grammars_dir()
        self.urls = config.load_grammar_urls() if urls is None else urls
        self.downloader = downloader
        self._languages: dict[str, Any] = {}
        self._lock = threading.Lock()

    def artifact_path(self, language: str) -> Path:
        return self.grammars_dir / f"tree-sitter-{language}{_shared_library_suffix()}"

    def get(self, language: str) -> Any:
        """Return a ``tree_sitter.Language`` or None."""
        with self._lock:
            if language in self._languages:
                return self._languages[language]
        lang_obj = self._resolve(language)
        with self._lock:
            self._languages[language] = lang_obj
        return lang_obj

    def _resolve(self, language: str) -> Any:
        if not _HAS_TREE_SITTER or Language is None:
            return None

        try:
            ptr = _binding_language(language)
        except ImportError:
            ptr = None
        if ptr is not None:
            try:
                return Language(ptr)
            except (TypeError, ValueError) as e:
                logger.warning("Failed to load grammar for %s: %s", language, e)

        return self._load_artifact(language)

    def _load_artifact(self, language: str) -> Any:
        path = self.artifact_path(language)
        if not path.is_file():
            url = self.urls.get(language)
            if not url:
                return None  # Not supported
            logger.info("Downloading grammar for %s...", language)
            try:
                self.downloader(url, path)
            except (OSError, urllib.error.URLError, ValueError) as e:
                logger.warning("Failed to download grammar for %s: %s", language, e)
                return None

        try:
            lib = ctypes.cdll.LoadLibrary(str(path))
            entry = getattr(lib, f"tree_sitter_{language}")
            entry.restype = ctypes.c_void_p
            return Language(entry())
        except (OSError, AttributeError, TypeError, ValueError) as e:
            logger.warning("Failed to load grammar for %s: %s", language, e)
            return None


# ── Chunking ─────────────────────────────────────────────────────────────

_FUNCTION_TYPES = {
    "function_declaration",
    "function_definition",  # python
    "method_definition",
    "generator_function_declaration",
    "function_item",  # rust
    "method_declaration",  # go
}

_CLASS_TYPES = {
    "class_declaration",
    "class_definition",  # python
    "abstract_class_declaration",
    "interface_declaration",
    "struct_item",  # rust
    "impl_item",  # rust
    "type_declaration",  # go
}

_PARAGRAPH_BREAK = re.compile(r"(\n\s*\n)")


def _node_text(node: tree_sitter.Node, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _classify(node: tree_sitter.Node) -> str | None:
    """Return ``function``/``class`` for declaration nodes, else None.

    Python decorators and JS/TS ``export`` wrap the real declaration.
    """
    if node.type in _FUNCTION_TYPES:
        return "function"
    if node.type in _CLASS_TYPES:
        return "class"
    if node.type == "decorated_definition":
        inner = node.child_by_field_name("definition")
    elif node.type == "export_statement":
        inner = node.child_by_field_name("declaration")
    else:
        return None
    return _classify(inner) if inner is not None else None


def fallback_chunks(content: str) -> list[Chunk]:
    """Split *content* into paragraph chunks on blank-line boundaries."""
    chunks: list[Chunk] = []
    line = 0
    for i, piece in enumerate(_PARAGRAPH_BREAK.split(content)):
        newlines = piece.count("\n")
        if i % 2 == 1 or not piece.strip():
            # Separator or blank segment: only advance the line counter
            line += newlines
            continue
        chunks.append(
            Chunk(
                content=piece,
                start_line=line,
                end_line=line + newlines + 1,
                kind="block",
            )
        )
        line += newlines
    return chunks


class TreeSitterChunker:
    """Chunk files by top-level syntax nodes, with a paragraph fallback."""

    def __init__(
        self,
        grammars: GrammarCache | None = None,
        min_chunk_chars: int = config.MIN_CHUNK_CHARS,
    ) -> None:
        self.grammars = grammars or GrammarCache()
        self.min_chunk_chars = min_chunk_chars
        self._parsers: dict[str, Any] = {}

    def _get_parser(self, language: str) -> Any:
        """Get or create a tree-sitter parser for the language."""
        if language in self._parsers:
            return self._parsers[language]
        if not _HAS_TREE_SITTER or Parser is None:
            return None
        lang_obj = self.grammars.get(language)
        if lang_obj is None:
            return None
        parser = Parser(lang_obj)
        self._parsers[language] = parser
        return parser

    def chunk(self, file_path: str, content: str) -> list[Chunk]:
        """Return the ordered chunks of *content*; never raises for grammars."""
        language = detect_language(file_path)
        if not language:
            return fallback_chunks(content)

        try:
            parser = self._get_parser(language)
        except Exception as e:
            logger.warning("Failed to create parser for %s: %s", language, e)
            parser = None
        if parser is None:
            return fallback_chunks(content)

        source = content.encode("utf-8")
        tree = parser.parse(source)

        chunks: list[Chunk] = []
        for node in tree.root_node.children:
            text = _node_text(node, source)
            kind = _classify(node)
            if kind is None:
                if len(text) <= self.min_chunk_chars:
                    continue
                kind = "other"
            chunks.append(
                Chunk(
                    content=text,
                    start_line=node.start_point[0],
                    end_line=node.end_point[0],
                    kind=kind,
                )
            )

        # e.g. a file with only imports
        if not chunks:
            return fallback_chunks(content)
        return chunks
