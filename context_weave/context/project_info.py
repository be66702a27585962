"""
Project metadata detection.

Looks for well-known build/config files at the workspace root to name the
project type and summarize it as a ``project_info`` context item.
"""

from __future__ import annotations

import json
import logging
import tomllib
from pathlib import Path

from context_weave.models import ContextItem, ItemType, ProjectMeta

LOG = logging.getLogger("context.project_info")

PROJECT_INFO_ID = "project-info"

# Checked in order; the first match decides the project type
_PROJECT_FILE_SIGNALS: list[tuple[str, str]] = [
    ("package.json", "Node.js"),
    ("*.csproj", ".NET"),
    ("*.fsproj", ".NET"),
    ("pom.xml", "Java"),
    ("build.gradle", "Java"),
    ("*.sln", ".NET"),
    ("pyproject.toml", "Python"),
    ("setup.py", "Python"),
    ("requirements.txt", "Python"),
    ("Cargo.toml", "Rust"),
    ("go.mod", "Go"),
]


def _find_project_file(root: Path) -> tuple[Path, str] | None:
    for pattern, project_type in _PROJECT_FILE_SIGNALS:
        matches = sorted(root.glob(pattern))
        if matches:
            return matches[0], project_type
    return None


def _package_json_details(path: Path) -> str:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return "Failed to parse package.json"
    deps = ", ".join((data.get("dependencies") or {}).keys())
    return (
        f"Name: {data.get('name') or 'N/A'}\n"
        f"Version: {data.get('version') or 'N/A'}\n"
        f"Description: {data.get('description') or 'N/A'}\n"
        f"Dependencies: {deps}"
    )


def _pyproject_details(path: Path) -> str:
    try:
        project = tomllib.loads(path.read_text(encoding="utf-8")).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return "Failed to parse pyproject.toml"
    deps = ", ".join(project.get("dependencies") or [])
    return (
        f"Name: {project.get('name') or 'N/A'}\n"
        f"Version: {project.get('version') or 'N/A'}\n"
        f"Description: {project.get('description') or 'N/A'}\n"
        f"Dependencies: {deps}"
    )


def detect_project_info(root: Path) -> ContextItem | None:
    """
    Summarize the workspace at *root*, or None when it does not exist.

    Returns:
        A ``project_info`` item with relevance 0.5.
    """
    root = Path(root)
    if not root.is_dir():
        return None

    project_type = "unknown"
    details = ""
    found = _find_project_file(root)
    if found is not None:
        project_file, project_type = found
        if project_file.name == "package.json":
            details = _package_json_details(project_file)
        elif project_file.name == "pyproject.toml":
            details = _pyproject_details(project_file)
        LOG.debug("Found project file %s -> %s", project_file.name, project_type)

    content = f"Workspace: {root.name}\nPath: {root}\nProject Type: {project_type}\n{details}".strip()
    return ContextItem(
        id=PROJECT_INFO_ID,
        type=ItemType.PROJECT_INFO,
        name="Project Information",
        content=content,
        metadata=ProjectMeta(project_type=project_type, name=root.name),
        relevance=0.5,
    )
