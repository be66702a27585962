"""Tests for syntax extraction and file classification."""

from __future__ import annotations

from context_weave.indexing.extractors import (
    GenericExtractor,
    PythonAstExtractor,
    get_extractor,
)
from context_weave.indexing.files import is_priority_source, language_for, should_exclude

PY_SOURCE = '''\
import os


def foo(x):
    return x + 1


@decorator
async def bar():
    await baz()


class Widget:
    def method(self):
        return 1
'''

TS_SOURCE = """\
export function add(a: number, b: number) {
  return a + b;
}

export class Point {
  constructor(public x: number) {}
}
"""


class TestPythonAstExtractor:
    def test_top_level_symbols(self):
        result = PythonAstExtractor().extract(PY_SOURCE)
        assert [f.name for f in result.functions] == ["foo", "bar"]
        assert list(result.classes) == ["Widget"]
        # methods stay inside their class
        assert "method" not in [f.name for f in result.functions]
        assert "def method" in result.classes["Widget"].code

    def test_spans_include_decorators(self):
        result = PythonAstExtractor().extract(PY_SOURCE)
        bar = result.functions[1]
        assert bar.code.startswith("@decorator")
        assert bar.start_line == 8
        assert bar.end_line == 10

    def test_duplicate_names_keep_first(self):
        source = "def f():\n    return 1\n\n\ndef f():\n    return 2\n"
        result = PythonAstExtractor().extract(source)
        assert len(result.functions) == 1
        assert "return 1" in result.functions[0].code

    def test_syntax_error_falls_back(self):
        source = "def broken(:\n    pass\n\ndef ok():\n    pass\n"
        result = PythonAstExtractor().extract(source)
        assert "ok" in [f.name for f in result.functions]

    def test_empty(self):
        assert PythonAstExtractor().extract("x = 1\n").is_empty


class TestGenericExtractor:
    def test_braced_blocks(self):
        result = GenericExtractor().extract(TS_SOURCE)
        add = result.functions[0]
        assert add.name == "add"
        assert add.code.splitlines()[-1] == "}"
        assert add.start_line == 1
        assert add.end_line == 3
        assert "Point" in result.classes
        assert result.classes["Point"].code.endswith("}")

    def test_go_and_rust_keywords(self):
        source = "func Handle(w http.ResponseWriter) {\n\tw.Write(nil)\n}\n\nfn main() {\n    run();\n}\n"
        names = [f.name for f in GenericExtractor().extract(source).functions]
        assert names == ["Handle", "main"]

    def test_nothing_found(self):
        assert GenericExtractor().extract("const x = 1;\n").is_empty


class TestGetExtractor:
    def test_defaults(self):
        assert isinstance(get_extractor("python"), PythonAstExtractor)
        assert isinstance(get_extractor("typescript"), GenericExtractor)

    def test_override(self):
        custom = GenericExtractor()
        assert get_extractor("python", {"python": custom}) is custom


class TestFileClassification:
    def test_language(self):
        assert language_for("a/b.py") == "python"
        assert language_for("x.TSX") == "typescriptreact"
        assert language_for("README") == "plaintext"

    def test_exclusions(self):
        assert should_exclude("/ws/node_modules/pkg/index.js")
        assert should_exclude("/ws/.git/HEAD")
        assert should_exclude("/ws/build/out.js")
        assert should_exclude("/ws/logo.png")
        assert should_exclude("/ws/.DS_Store")
        assert not should_exclude("/ws/src/builder.py")
        assert not should_exclude("/ws/src/main.py")

    def test_priority(self):
        assert is_priority_source("main.go")
        assert not is_priority_source("notes.md")
