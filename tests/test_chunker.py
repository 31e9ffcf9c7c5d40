"""Unit tests for reposync.chunker."""

import io
import urllib.error
from unittest import mock

import pytest

from reposync import chunker
from reposync.chunker import (
    Chunk,
    GrammarCache,
    TreeSitterChunker,
    detect_language,
    download_file,
    fallback_chunks,
)

PYTHON_SOURCE = '''import os
import sys


def hello(name):
    return f"Hello, {name}!"


class Greeter:
    def greet(self):
        return hello("world")


CONSTANT_TABLE = {"alpha": 1, "beta": 2, "gamma": 3, "delta": 4, "epsilon": 5}
X = 1
'''

IMPORTS_ONLY = """import os
import sys

from pathlib import Path
"""


@pytest.fixture
def no_download_grammars(tmp_path):
    """A grammar cache that never touches the network."""
    return GrammarCache(grammars_dir=tmp_path / "grammars", urls={})


@pytest.fixture
def python_chunker(no_download_grammars):
    pytest.importorskip("tree_sitter")
    pytest.importorskip("tree_sitter_python")
    return TreeSitterChunker(grammars=no_download_grammars, min_chunk_chars=50)


# ---------------------------------------------------------------------------
# Tests for detect_language
# ---------------------------------------------------------------------------


class TestDetectLanguage:
    """Tests for language detection by extension."""

    def test_known_extensions(self):
        assert detect_language("a.py") == "python"
        assert detect_language("a.ts") == "typescript"
        assert detect_language("a.tsx") == "tsx"
        assert detect_language("a.mjs") == "javascript"
        assert detect_language("a.go") == "go"
        assert detect_language("a.rs") == "rust"

    def test_case_insensitive(self):
        assert detect_language("A.PY") == "python"

    def test_unknown(self):
        assert detect_language("notes.md") is None
        assert detect_language("Makefile") is None


# ---------------------------------------------------------------------------
# Tests for fallback_chunks
# ---------------------------------------------------------------------------


class TestFallbackChunks:
    """Tests for the paragraph splitter."""

    def test_single_paragraph(self):
        chunks = fallback_chunks("one\ntwo\nthree")
        assert chunks == [Chunk("one\ntwo\nthree", 0, 3, "block")]

    def test_line_numbers_track_blank_lines(self):
        content = "a\nb\n\nc\n\n\nd"
        chunks = fallback_chunks(content)
        assert [(c.content, c.start_line, c.end_line) for c in chunks] == [
            ("a\nb", 0, 2),
            ("c", 3, 4),
            ("d", 6, 7),
        ]
        lines = content.split("\n")
        for c in chunks:
            assert "\n".join(lines[c.start_line : c.end_line]) == c.content

    def test_whitespace_only_separator_lines(self):
        chunks = fallback_chunks("first\n   \t\nsecond")
        assert [c.content for c in chunks] == ["first", "second"]
        assert chunks[1].start_line == 2

    def test_leading_blank_lines_skipped(self):
        chunks = fallback_chunks("\n\n\nbody")
        assert len(chunks) == 1
        assert chunks[0].start_line == 3

    def test_all_tagged_block(self):
        assert {c.kind for c in fallback_chunks("a\n\nb\n\nc")} == {"block"}

    def test_empty_content(self):
        assert fallback_chunks("") == []
        assert fallback_chunks("\n\n  \n") == []


# ---------------------------------------------------------------------------
# Tests for TreeSitterChunker
# ---------------------------------------------------------------------------


class TestTreeSitterChunker:
    """Tests for syntax-aware chunking."""

    def test_top_level_declarations(self, python_chunker):
        chunks = python_chunker.chunk("example.py", PYTHON_SOURCE)
        kinds = [c.kind for c in chunks]
        assert kinds == ["function", "class", "other"]

        func, cls, other = chunks
        assert func.content.startswith("def hello")
        assert (func.start_line, func.end_line) == (4, 5)
        assert cls.content.startswith("class Greeter")
        assert (cls.start_line, cls.end_line) == (8, 10)
        assert other.content.startswith("CONSTANT_TABLE")

    def test_methods_stay_inside_class_chunk(self, python_chunker):
        chunks = python_chunker.chunk("example.py", PYTHON_SOURCE)
        assert not any(c.content.startswith("def greet") for c in chunks)

    def test_imports_only_matches_fallback(self, python_chunker):
        chunks = python_chunker.chunk("imports.py", IMPORTS_ONLY)
        assert chunks
        assert chunks == fallback_chunks(IMPORTS_ONLY)

    def test_decorated_definition(self, python_chunker):
        source = "@dataclass\nclass Point:\n    x: int\n    y: int\n"
        chunks = python_chunker.chunk("point.py", source)
        assert [c.kind for c in chunks] == ["class"]
        assert chunks[0].content.startswith("@dataclass")

    def test_threshold_is_configurable(self, no_download_grammars):
        pytest.importorskip("tree_sitter_python")
        small = TreeSitterChunker(grammars=no_download_grammars, min_chunk_chars=5)
        chunks = small.chunk("imports.py", "import os\nimport sys\n")
        assert [c.kind for c in chunks] == ["other", "other"]

    def test_typescript_export(self, no_download_grammars):
        pytest.importorskip("tree_sitter_typescript")
        ts = TreeSitterChunker(grammars=no_download_grammars)
        source = (
            "import { x } from './x';\n\n"
            "export function add(a: number, b: number): number {\n"
            "  return a + b;\n"
            "}\n\n"
            "export class Calc {\n"
            "  run() { return add(1, 2); }\n"
            "}\n"
        )
        chunks = ts.chunk("calc.ts", source)
        assert [c.kind for c in chunks] == ["function", "class"]

    def test_unknown_extension_uses_fallback(self, no_download_grammars):
        text_chunker = TreeSitterChunker(grammars=no_download_grammars)
        content = "para one\n\npara two"
        assert text_chunker.chunk("notes.md", content) == fallback_chunks(content)

    def test_missing_grammar_uses_fallback(self, no_download_grammars):
        with mock.patch.object(chunker, "_binding_language", side_effect=ImportError):
            c = TreeSitterChunker(grammars=no_download_grammars)
            assert c.chunk("example.py", PYTHON_SOURCE) == fallback_chunks(PYTHON_SOURCE)

    def test_without_tree_sitter(self, no_download_grammars):
        with mock.patch.object(chunker, "_HAS_TREE_SITTER", False):
            c = TreeSitterChunker(grammars=no_download_grammars)
            assert c.chunk("example.py", PYTHON_SOURCE) == fallback_chunks(PYTHON_SOURCE)

    def test_parser_errors_degrade(self, no_download_grammars):
        c = TreeSitterChunker(grammars=no_download_grammars)
        with mock.patch.object(c, "_get_parser", side_effect=RuntimeError("bad abi")):
            assert c.chunk("example.py", "a\n\nb") == fallback_chunks("a\n\nb")

    def test_parser_cached(self, python_chunker):
        assert python_chunker._get_parser("python") is python_chunker._get_parser("python")


# ---------------------------------------------------------------------------
# Tests for GrammarCache
# ---------------------------------------------------------------------------


class TestGrammarCache:
    """Tests for lazy grammar acquisition."""

    def test_unsupported_language_without_url(self, tmp_path):
        cache = GrammarCache(grammars_dir=tmp_path, urls={})
        assert cache.get("cobol") is None

    def test_installed_binding(self, tmp_path):
        pytest.importorskip("tree_sitter_python")
        cache = GrammarCache(grammars_dir=tmp_path, urls={})
        assert cache.get("python") is not None

    def test_urls_default_to_config(self, tmp_path):
        urls = {"ruby": "https://example.com/ruby.so"}
        with mock.patch("reposync.config.load_grammar_urls", return_value=urls):
            cache = GrammarCache(grammars_dir=tmp_path)
        assert cache.urls == urls

    def test_artifact_path_keyed_by_language(self, tmp_path):
        cache = GrammarCache(grammars_dir=tmp_path, urls={})
        path = cache.artifact_path("python")
        assert path.parent == tmp_path
        assert path.name.startswith("tree-sitter-python.")

    def test_download_failure_degrades_and_is_memoized(self, tmp_path, caplog):
        pytest.importorskip("tree_sitter")
        downloader = mock.Mock(side_effect=urllib.error.URLError("offline"))
        cache = GrammarCache(
            grammars_dir=tmp_path, urls={"cobol": "https://example.com/cobol"}, downloader=downloader
        )
        with caplog.at_level("WARNING", logger="reposync.chunker"):
            assert cache.get("cobol") is None
            assert cache.get("cobol") is None
        assert downloader.call_count == 1
        assert "Failed to download grammar for cobol" in caplog.text

    def test_unloadable_artifact_degrades(self, tmp_path, caplog):
        pytest.importorskip("tree_sitter")

        def fake_download(url, dest):
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(b"not a shared library")

        cache = GrammarCache(
            grammars_dir=tmp_path, urls={"cobol": "https://example.com/cobol"}, downloader=fake_download
        )
        with caplog.at_level("WARNING", logger="reposync.chunker"):
            assert cache.get("cobol") is None
        assert "Failed to load grammar for cobol" in caplog.text

    def test_cached_artifact_skips_download(self, tmp_path):
        downloader = mock.Mock()
        cache = GrammarCache(
            grammars_dir=tmp_path, urls={"cobol": "https://example.com/cobol"}, downloader=downloader
        )
        cache.artifact_path("cobol").write_bytes(b"junk")
        cache.get("cobol")
        downloader.assert_not_called()


class TestDownloadFile:
    """Tests for the grammar downloader."""

    def test_writes_body(self, tmp_path):
        response = io.BytesIO(b"\x00asm-bytes")
        with mock.patch("urllib.request.urlopen", return_value=response):
            dest = tmp_path / "g" / "tree-sitter-x.so"
            download_file("https://example.com/x", dest)
        assert dest.read_bytes() == b"\x00asm-bytes"
        assert not (tmp_path / "g" / "tree-sitter-x.so.part").exists()

    def test_failure_leaves_no_artifact(self, tmp_path):
        dest = tmp_path / "tree-sitter-x.so"
        with mock.patch(
            "urllib.request.urlopen", side_effect=urllib.error.URLError("down")
        ):
            with pytest.raises(urllib.error.URLError):
                download_file("https://example.com/x", dest)
        assert not dest.exists()
