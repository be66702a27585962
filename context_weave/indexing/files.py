"""
File classification for indexing: exclusion rules and language detection.
"""

from __future__ import annotations

import re
from pathlib import Path

# Extension to language id
EXTENSION_LANGUAGE_MAP: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".py": "python",
    ".pyi": "python",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".rb": "ruby",
    ".php": "php",
    ".rs": "rust",
    ".html": "html",
    ".css": "css",
    ".json": "json",
    ".md": "markdown",
}

# Source extensions that get an importance boost and are swept at startup
PRIORITY_EXTENSIONS: frozenset[str] = frozenset(
    {".ts", ".tsx", ".js", ".jsx", ".py", ".java", ".c", ".cpp", ".cs", ".go", ".rb", ".php"}
)

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    {
        # binaries
        ".exe", ".dll", ".obj", ".bin", ".dat", ".db", ".sqlite", ".mdb",
        # images
        ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".svg",
        # media
        ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac",
        # archives
        ".zip", ".rar", ".7z", ".tar", ".gz",
        # documents
        ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    }
)

# Directories to skip when scanning for files
SKIP_DIRS: frozenset[str] = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        "dist",
        "build",
        ".tox",
        ".pytest_cache",
        ".mypy_cache",
        ".idea",
        ".vscode",
        ".context_weave",
    }
)

_EXCLUDE_PATTERNS = [
    re.compile(r"(^|[/\\])node_modules([/\\]|$)"),
    re.compile(r"(^|[/\\])\.git([/\\]|$)"),
    re.compile(r"(^|[/\\])dist([/\\]|$)"),
    re.compile(r"(^|[/\\])build([/\\]|$)"),
    re.compile(r"(^|[/\\])\.vscode([/\\]|$)"),
    re.compile(r"(^|[/\\])\.idea([/\\]|$)"),
    re.compile(r"(^|[/\\])__pycache__([/\\]|$)"),
    re.compile(r"(^|[/\\])\.venv([/\\]|$)"),
    re.compile(r"\.DS_Store$"),
]


def language_for(path: str | Path) -> str:
    return EXTENSION_LANGUAGE_MAP.get(Path(path).suffix.lower(), "plaintext")


def should_exclude(path: str | Path) -> bool:
    """True for vcs/build/dependency paths and binary or media files."""
    text = str(path)
    if any(pattern.search(text) for pattern in _EXCLUDE_PATTERNS):
        return True
    return Path(text).suffix.lower() in BINARY_EXTENSIONS


def is_priority_source(path: str | Path) -> bool:
    return Path(path).suffix.lower() in PRIORITY_EXTENSIONS
