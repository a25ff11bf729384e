"""
File Materializer - Write a sanitized file set plus scaffold into a working directory.
"""

import json
import logging
from pathlib import Path, PurePosixPath
from typing import Dict, List, Set

from preview_sandbox.schemas import Framework, normalize_framework
from preview_sandbox.sandbox import templates
from preview_sandbox.sandbox.errors import MaterializationError

logger = logging.getLogger(__name__)


# Extensions that resolve to the same module (app/page.jsx satisfies app/page.tsx)
MODULE_EXTENSIONS = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}

# Next.js app-router files that conflict with a pages-router project
APP_ROUTER_FILES = (
    "layout.tsx", "globals.css", "page.tsx", "loading.tsx", "not-found.tsx", "error.tsx", "global-error.tsx",
)


def detect_app_dir(paths) -> str:
    """Return "src/app" when the supplied files use it, otherwise "app"."""
    return "src/app" if any(path.startswith("src/app/") for path in paths) else "app"


def _module_key(path: str) -> str:
    pure = PurePosixPath(path)
    if pure.suffix.lower() in MODULE_EXTENSIONS:
        return str(pure.with_suffix(""))
    return path


def merge_package_json(user_content: str, framework: Framework) -> str:
    """
    Merge a user-supplied package.json with the framework template.

    Template dependencies, devDependencies and scripts are added only where the
    user did not define them. The dev script is always the container one.

    Args:
        user_content: package.json text from the generated project
        framework: Target framework

    Returns:
        Merged package.json text
    """
    template = templates.PACKAGE_TEMPLATES[framework]
    try:
        user = json.loads(user_content)
    except ValueError:
        user = None
    if not isinstance(user, dict):
        logger.warning("Ignoring unusable package.json, using the %s template", framework.value)
        return templates.package_json(framework)

    merged = dict(user)
    for key in ("name", "version", "private", "type"):
        if key in template:
            merged.setdefault(key, template[key])

    for section in ("dependencies", "devDependencies", "scripts"):
        combined = dict(template.get(section, {}))
        supplied = user.get(section)
        if isinstance(supplied, dict):
            combined.update(supplied)
        if combined:
            merged[section] = combined

    merged["scripts"]["dev"] = templates.DEV_SCRIPTS[framework]
    return json.dumps(merged, indent=2) + "\n"


class FileMaterializer:
    """Writes project files and the framework scaffold to disk."""

    def scaffold_for(self, files: Dict[str, str], framework: Framework) -> Dict[str, str]:
        """
        Scaffold files that the supplied set does not already provide.

        A scaffold module counts as present when the user supplied the same
        module under any script extension (app/page.jsx for app/page.tsx).
        """
        app_dir = detect_app_dir(files)
        scaffold = templates.scaffold_files(framework, app_dir)

        supplied = set(files)
        supplied_modules: Set[str] = {_module_key(path) for path in files}
        pages_router = any(
            path.startswith(("pages/", "src/pages/")) for path in files
        ) and not any(path.startswith(app_dir + "/") for path in files)

        missing = {}
        for path, content in scaffold.items():
            if path in supplied or _module_key(path) in supplied_modules:
                continue
            if framework == Framework.NEXTJS and pages_router and path in {
                f"{app_dir}/{name}" for name in APP_ROUTER_FILES
            }:
                continue
            missing[path] = content
        return missing

    def materialize(self, work_dir, files: Dict[str, str], framework) -> List[str]:
        """
        Write sanitized files, then synthesize the missing scaffold files.

        Args:
            work_dir: Directory to create (parents included)
            files: Sanitized mapping of relative path to content
            framework: Target framework

        Returns:
            Relative paths written, user files first

        Raises:
            MaterializationError: If the filesystem refuses any write
        """
        framework = normalize_framework(framework)
        root = Path(work_dir)
        to_write: Dict[str, str] = dict(files)

        if "package.json" in to_write:
            to_write["package.json"] = merge_package_json(to_write["package.json"], framework)

        scaffold = self.scaffold_for(files, framework)
        to_write.update(scaffold)

        written: List[str] = []
        try:
            root.mkdir(parents=True, exist_ok=True)
            for rel_path, content in to_write.items():
                target = root / rel_path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
                written.append(rel_path)
        except (OSError, UnicodeError) as e:
            raise MaterializationError(f"Could not write project files to {root}: {e}") from e

        logger.info(
            "Materialized %d files (%d scaffold) into %s",
            len(written), len(scaffold), root,
        )
        return written
