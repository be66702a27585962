"""
Syntax-extraction collaborators.

Each extractor turns source text into the top-level functions and classes it
defines, with their source spans. The indexing pipeline only depends on the
``SyntaxExtractor`` protocol; ``get_extractor`` picks a default per language.

- ``PythonAstExtractor`` uses the stdlib ``ast`` module.
- ``GenericExtractor`` is a regex + indentation heuristic for everything else.
"""

from __future__ import annotations

import ast
import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

LOG = logging.getLogger("indexing.extractors")


@dataclass
class ExtractedSymbol:
    """A function or class with its 1-based inclusive line span."""

    name: str
    code: str
    start_line: int
    end_line: int


@dataclass
class Extraction:
    functions: list[ExtractedSymbol] = field(default_factory=list)
    classes: dict[str, ExtractedSymbol] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.functions and not self.classes


class SyntaxExtractor(Protocol):
    def extract(self, code: str) -> Extraction: ...


def _get_end_lineno(node: ast.AST, default: int = 1) -> int:
    return getattr(node, "end_lineno", None) or getattr(node, "lineno", default) or default


class PythonAstExtractor:
    """
    Module-level ``def``/``async def``/``class`` definitions.

    Methods stay inside their class's code. Decorators are included in the
    span. Source that does not parse falls back to the generic heuristic.
    """

    def extract(self, code: str) -> Extraction:
        try:
            tree = ast.parse(code)
        except (SyntaxError, ValueError) as exc:
            LOG.debug("ast.parse failed (%s); using generic extractor", exc)
            return GenericExtractor().extract(code)

        lines = code.split("\n")
        result = Extraction()
        seen: set[str] = set()

        for node in tree.body:
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                continue
            start = min([node.lineno] + [d.lineno for d in node.decorator_list])
            end = _get_end_lineno(node, start)
            symbol = ExtractedSymbol(
                name=node.name,
                code="\n".join(lines[start - 1 : end]),
                start_line=start,
                end_line=end,
            )
            if isinstance(node, ast.ClassDef):
                result.classes.setdefault(node.name, symbol)
            elif node.name not in seen:
                seen.add(node.name)
                result.functions.append(symbol)

        return result


_FUNC_RE = re.compile(r"^\s*(?:export\s+)?(?:async\s+)?(?:def|function|func|fn)\s+([A-Za-z_]\w*)\s*[(<]")
_CLASS_RE = re.compile(r"^\s*(?:export\s+)?(?:abstract\s+)?class\s+([A-Za-z_]\w*)")
_CLOSER_RE = re.compile(r"^\s*[}\]);]+\s*;?\s*$")


def _leading_ws(line: str) -> int:
    return len(line) - len(line.lstrip())


def _extract_block(lines: list[str], start: int) -> list[str]:
    """The header line plus every following line indented deeper than it."""
    block = [lines[start]]
    header_indent = _leading_ws(lines[start])

    i = start + 1
    while i < len(lines):
        line = lines[i]
        if not line.strip():
            block.append(line)
            i += 1
            continue
        if _leading_ws(line) > header_indent:
            block.append(line)
            i += 1
            continue
        # closing brace at the header's own indentation ends the block
        if _leading_ws(line) == header_indent and _CLOSER_RE.match(line):
            block.append(line)
        break

    while len(block) > 1 and not block[-1].strip():
        block.pop()
    return block


class GenericExtractor:
    """Line-oriented heuristic for languages without a dedicated parser."""

    def extract(self, code: str) -> Extraction:
        lines = code.split("\n")
        result = Extraction()
        seen: set[str] = set()

        for i, line in enumerate(lines):
            func = _FUNC_RE.match(line)
            if func and func.group(1) not in seen:
                block = _extract_block(lines, i)
                seen.add(func.group(1))
                result.functions.append(
                    ExtractedSymbol(func.group(1), "\n".join(block), i + 1, i + len(block))
                )
                continue

            cls = _CLASS_RE.match(line)
            if cls and cls.group(1) not in result.classes:
                block = _extract_block(lines, i)
                result.classes[cls.group(1)] = ExtractedSymbol(
                    cls.group(1), "\n".join(block), i + 1, i + len(block)
                )

        return result


_EXTRACTORS: dict[str, SyntaxExtractor] = {
    "python": PythonAstExtractor(),
}


def get_extractor(language: str, overrides: dict[str, SyntaxExtractor] | None = None) -> SyntaxExtractor:
    """Extractor for *language*; *overrides* take precedence over the defaults."""
    if overrides and language in overrides:
        return overrides[language]
    return _EXTRACTORS.get(language, GenericExtractor())
