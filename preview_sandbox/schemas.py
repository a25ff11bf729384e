"""
Pydantic schemas for sandbox creation requests.
"""

from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, Field, field_validator


class Framework(str, Enum):
    """Frameworks the engine knows how to scaffold and serve."""
    NEXTJS = "nextjs"
    REACT = "react"
    VUE = "vue"
    VANILLA = "vanilla"


# Aliases accepted from callers (lowercased)
FRAMEWORK_ALIASES = {
    "next": Framework.NEXTJS,
    "next.js": Framework.NEXTJS,
    "nextjs": Framework.NEXTJS,
    "react": Framework.REACT,
    "reactjs": Framework.REACT,
    "react.js": Framework.REACT,
    "vue": Framework.VUE,
    "vuejs": Framework.VUE,
    "vue.js": Framework.VUE,
    "vanilla": Framework.VANILLA,
    "vite": Framework.VANILLA,
    "html": Framework.VANILLA,
    "static": Framework.VANILLA,
}


def normalize_framework(value) -> Framework:
    """Map a caller-supplied framework tag onto a Framework (unknown -> vanilla)."""
    if isinstance(value, Framework):
        return value
    key = str(value or "").strip().lower()
    return FRAMEWORK_ALIASES.get(key, Framework.VANILLA)


def normalize_path(path: str) -> str:
    """
    Normalize a generated file path to a safe relative POSIX path.

    Raises:
        ValueError: If the path is empty or escapes the project root
    """
    normalized = str(path).replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")

    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if not parts:
        raise ValueError(f"Empty file path: {path!r}")
    if any(part == ".." for part in parts):
        raise ValueError(f"File path escapes the project root: {path!r}")
    return "/".join(parts)


class FileRecord(BaseModel):
    """A single generated file."""
    path: str = Field(..., description="File path relative to project root")
    content: str = Field("", description="Raw file content as produced by the generator")

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return normalize_path(value)

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value):
        return "" if value is None else value


class SandboxRequest(BaseModel):
    """Everything needed to provision one sandbox."""
    project_ref: str = Field(..., min_length=1, description="Owning logical project")
    framework: Framework = Field(Framework.NEXTJS, description="Target framework")
    files: Dict[str, str] = Field(default_factory=dict, description="Map of file path to file content")

    @field_validator("project_ref")
    @classmethod
    def _check_project_ref(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("project_ref must not be blank")
        return value

    @field_validator("framework", mode="before")
    @classmethod
    def _check_framework(cls, value):
        return normalize_framework(value)

    @field_validator("files", mode="before")
    @classmethod
    def _check_files(cls, value):
        if value is None:
            return {}
        if isinstance(value, list):
            records = [r if isinstance(r, FileRecord) else FileRecord.model_validate(r) for r in value]
            return {r.path: r.content for r in records}
        return {
            normalize_path(path): ("" if content is None else content)
            for path, content in dict(value).items()
        }

    def records(self) -> List[FileRecord]:
        """Return the file set as FileRecord objects."""
        return [FileRecord(path=path, content=content) for path, content in self.files.items()]
