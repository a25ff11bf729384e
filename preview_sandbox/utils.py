"""
Utility functions shared by the sandbox engine.
"""

import re
from pathlib import PurePosixPath
from typing import Optional, Union


# Mapping of file extensions to the file kinds the sanitizer understands
EXTENSION_KIND_MAP = {
    # Markup-bearing components
    ".tsx": "component",
    ".jsx": "component",
    ".vue": "vue",
    # Scripts
    ".js": "script",
    ".mjs": "script",
    ".cjs": "script",
    ".ts": "script",
    # Styles
    ".css": "style",
    ".scss": "style",
    ".sass": "style",
    ".less": "style",
    # Data/Config
    ".json": "json",
    # Web
    ".html": "html",
    ".htm": "html",
}

# Script files that act as UI entry points when they carry markup
ENTRY_STEMS = {"page", "layout", "app", "main", "index", "template", "loading", "error", "not-found"}
ENTRY_DIRS = {"app", "pages", "src", "components"}

CONFIG_FILE_PATTERN = re.compile(r"\.config\.(js|mjs|cjs|ts)$")


def guess_file_kind(path: str) -> str:
    """
    Guess the sanitizer file kind from a path.

    Args:
        path: Relative file path

    Returns:
        One of component, vue, script, config, style, json, html, other
    """
    name = PurePosixPath(path).name
    if CONFIG_FILE_PATTERN.search(name):
        return "config"

    suffix = PurePosixPath(path).suffix.lower()
    return EXTENSION_KIND_MAP.get(suffix, "other")


def is_entry_script(path: str) -> bool:
    """Check whether a .js/.ts path sits where UI entry points live."""
    pure = PurePosixPath(path)
    stem = pure.stem.lower()
    if stem not in ENTRY_STEMS:
        return False
    return any(part in ENTRY_DIRS for part in pure.parts[:-1])


def pascal_case(value: str, default: str = "Component") -> str:
    """Turn a file stem such as 'hero-section' into 'HeroSection'."""
    words = re.split(r"[^A-Za-z0-9]+", value)
    name = "".join(word[:1].upper() + word[1:] for word in words if word)
    if not name or not name[0].isalpha():
        return default
    return name


def safe_name(value: str, max_length: int = 48) -> str:
    """
    Generate a Docker-safe name fragment from arbitrary text.

    Args:
        value: Any identifier (project ref, session id)
        max_length: Maximum length of the result

    Returns:
        Lowercase string matching [a-z0-9][a-z0-9_.-]*
    """
    name = value[:max_length].strip().lower()

    # Replace whitespace with hyphens
    name = re.sub(r"\s+", "-", name)

    # Remove anything Docker refuses in names and tags
    name = re.sub(r"[^a-z0-9_.-]", "", name)

    # Names must start with an alphanumeric character
    name = name.lstrip("_.-")

    if not name:
        name = "project"

    return name


def decode_output(data: Union[bytes, str, None]) -> str:
    """Decode process or container output, replacing undecodable bytes."""
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def tail_text(text: Optional[str], lines: int = 50, max_chars: int = 4000) -> str:
    """Return the last `lines` lines of text, capped at `max_chars` characters."""
    if not text:
        return ""
    tail = "\n".join(text.rstrip().splitlines()[-lines:])
    if len(tail) > max_chars:
        tail = tail[-max_chars:]
    return tail
