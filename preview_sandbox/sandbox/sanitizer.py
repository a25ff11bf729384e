"""
Content Sanitizer - Validate and repair generated files before they hit disk.

Generated projects fail in shallow but build-breaking ways: prose where code
should be, markdown fences inside source files, components without a default
export, half-written JSX, stylesheets that are nothing but comments. A broken
file blocks the whole preview, so every rule here prefers replacing a
suspicious file with a small working placeholder over keeping something that
might compile.

Classification is pattern-based on purpose (no parser). Rules are tables of
(name, predicate) pairs evaluated in order; the first match decides the
replacement.
"""

import json
import logging
import re
from collections import Counter
from pathlib import PurePosixPath
from typing import Callable, Dict, List, Optional, Tuple

from preview_sandbox.schemas import Framework, normalize_framework
from preview_sandbox.sandbox import templates
from preview_sandbox.sandbox.errors import ContentValidationFailure
from preview_sandbox.utils import decode_output, guess_file_kind, is_entry_script

logger = logging.getLogger(__name__)


# =============================================================================
# PATTERNS
# =============================================================================

FENCE_PATTERN = re.compile(r"^\s*(```|~~~)", re.MULTILINE)
MARKDOWN_HEADER_PATTERN = re.compile(r"^#{1,6}\s+\w", re.MULTILINE)

PROSE_OPENERS = re.compile(
    r"^(here is|here's|here are|sure\b|certainly\b|of course\b|below is|below are|"
    r"the following|this (file|component|code|page|module|is|will)\b|i've\b|i have\b|"
    r"i'll\b|i will\b|let me\b|let's\b|note:|explanation:|step \d)",
    re.IGNORECASE,
)
CODE_PUNCTUATION = re.compile(r"[;{}()=<>\[\]`'\"]")

LEAKED_LINE_PATTERN = re.compile(r"^\s*(undefined|null|\[object Object\]);?\s*$", re.MULTILINE)
LEAKED_MARKUP_PATTERN = re.compile(r">\s*(undefined|null|\[object Object\])\s*<")

DEFAULT_EXPORT_PATTERN = re.compile(
    r"^\s*export\s+default\b|export\s*\{[^}]*\bas\s+default\b", re.MULTILINE
)
MARKUP_RETURN_PATTERN = re.compile(r"(\breturn\s*\(?\s*<|=>\s*\(?\s*<)")
MARKUP_PATTERN = re.compile(r"<([A-Za-z][\w.-]*(?=[\s/>])|>)")

USE_CLIENT_PATTERN = re.compile(r"""^\s*['"]use client['"];?[ \t]*\n?""")
ASYNC_DEFAULT_PATTERN = re.compile(r"export\s+default\s+async\b")
METADATA_EXPORT_PATTERN = re.compile(r"export\s+(const\s+metadata\b|(async\s+)?function\s+generateMetadata\b)")
EVENT_HANDLER_PATTERN = re.compile(r"\bon[A-Z]\w*\s*=\s*\{")

REACT_HOOKS = (
    "useState", "useEffect", "useRef", "useMemo", "useCallback", "useContext",
    "useReducer", "useLayoutEffect", "useId", "useTransition",
)
HOOK_USAGE_PATTERN = re.compile(r"(?<![\w.])(" + "|".join(REACT_HOOKS) + r")\s*[<(]")
REACT_IMPORT_PATTERN = re.compile(
    r"""import\s+(?:(?P<default>[\w$]+)\s*,?\s*)?(?:\*\s+as\s+(?P<namespace>[\w$]+)\s*)?"""
    r"""(?:\{(?P<named>[^}]*)\})?\s*from\s*['"]react['"]"""
)
REACT_NAMESPACE_USAGE = re.compile(r"(?<![\w.])React\.")

CSS_COMMENT_PATTERN = re.compile(r"/\*.*?\*/", re.DOTALL)
CSS_LINE_COMMENT_PATTERN = re.compile(r"^\s*//.*$", re.MULTILINE)

# Component files the framework loads by default export
ROUTE_STEMS = {"page", "layout", "template", "loading", "error", "global-error", "not-found", "app"}

# Characters after which a `<` can open markup (rather than a generic or a comparison)
MARKUP_LEAD_CHARS = set("(){}[]>:?,;=&|!\n\t ")

# Characters the tag scanner may walk per character of input before giving up
MARKUP_SCAN_FACTOR = 20
# tag_imbalance result when the budget runs out; the file is treated as broken
MARKUP_TOO_COMPLEX = "<markup too complex>"


# =============================================================================
# LOW-LEVEL SCANNERS
# =============================================================================

def _first_line(content: str) -> str:
    for line in content.splitlines():
        if line.strip():
            return line.strip()
    return ""


def looks_like_prose(content: str) -> bool:
    """True when the file opens with an explanatory sentence instead of code."""
    line = _first_line(content)
    if not line:
        return False
    if PROSE_OPENERS.match(line):
        return True
    words = line.split()
    return (
        len(words) >= 4
        and line[0].isupper()
        and line.endswith((".", ":", "!"))
        and not CODE_PUNCTUATION.search(line)
    )


def has_markdown(content: str) -> bool:
    """True when markdown fences or headers are embedded in a source file."""
    return bool(FENCE_PATTERN.search(content) or MARKDOWN_HEADER_PATTERN.search(content))


def _strip_comments(code: str) -> str:
    """
    Blank out JS block comments and line comments, keeping string contents.

    A `//` only starts a comment at the beginning of a line or after code
    punctuation, so URLs inside JSX text survive.
    """
    out: List[str] = []
    i = 0
    n = len(code)
    quote: Optional[str] = None
    last = "\n"  # last character that is not a space or tab
    while i < n:
        ch = code[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(code[i + 1])
                i += 2
                continue
            if ch == quote or (ch == "\n" and quote != "`"):
                quote = None
            last = ch
            i += 1
            continue
        if code.startswith("/*", i):
            end = code.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(re.sub(r"[^\n]", " ", code[i:end]))
            i = end
            continue
        if code.startswith("//", i) and last in ("\n", ";", "{", "}", ",", ")"):
            end = code.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        if ch not in (" ", "\t"):
            last = ch
        out.append(ch)
        i += 1
    return "".join(out)


def unbalanced_delimiters(code: str) -> bool:
    """
    Check (), [] and {} balance outside strings.

    Single and double quoted strings end at a newline, so an apostrophe in
    JSX text only hides the rest of its own line.
    """
    pairs = {")": "(", "]": "[", "}": "{"}
    stack: List[str] = []
    quote: Optional[str] = None
    i = 0
    n = len(code)
    while i < n:
        ch = code[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote or (ch == "\n" and quote != "`"):
                quote = None
            i += 1
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        elif ch in "([{":
            stack.append(ch)
        elif ch in pairs:
            if not stack or stack.pop() != pairs[ch]:
                return True
        i += 1
    return bool(stack)


def _scan_tag(code: str, start: int) -> Tuple[int, bool]:
    """Scan a tag opened at `start`; return (end index, self_closing)."""
    depth = 0
    quote: Optional[str] = None
    i = start + 1
    n = len(code)
    while i < n:
        ch = code[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"') and depth == 0:
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth = max(0, depth - 1)
        elif ch == ">" and depth == 0:
            return i, code[i - 1] == "/"
        elif ch == "<" and depth == 0:
            # Ran into the next tag: this one was never closed
            return i - 1, False
        i += 1
    return n, False


def tag_imbalance(code: str) -> Optional[str]:
    """
    Compare opening and closing markup tags per name.

    Tags nested in attribute expressions are rescanned, so the total scan is
    capped at MARKUP_SCAN_FACTOR characters per input character.

    Returns:
        The first tag name whose counts differ ("" for fragments),
        MARKUP_TOO_COMPLEX if the scan budget ran out, or None
    """
    budget = MARKUP_SCAN_FACTOR * len(code) + 1000
    opened: Counter = Counter()
    closed: Counter = Counter()
    for match in MARKUP_PATTERN.finditer(code):
        start = match.start()
        before = code[start - 1] if start else "\n"
        name = match.group(1)
        if before == "<":
            continue
        if name == ">":
            # Fragment opener `<>`
            if before in MARKUP_LEAD_CHARS:
                opened[""] += 1
            continue
        if before not in MARKUP_LEAD_CHARS:
            continue  # generic such as useState<string>
        end, self_closing = _scan_tag(code, start)
        budget -= end - start
        if budget < 0:
            return MARKUP_TOO_COMPLEX
        if not self_closing:
            opened[name] += 1
    for match in re.finditer(r"</\s*([A-Za-z][\w.-]*)?\s*>", code):
        closed[match.group(1) or ""] += 1

    for name in set(opened) | set(closed):
        if opened[name] != closed[name]:
            return name
    return None


def has_leaked_tokens(content: str) -> bool:
    """True for literal undefined/null/[object Object] leaking into a file."""
    stripped = content.strip().rstrip(";")
    if stripped in ("undefined", "null", "[object Object]"):
        return True
    return bool(LEAKED_LINE_PATTERN.search(content) or LEAKED_MARKUP_PATTERN.search(content))


def default_export_count(code: str) -> int:
    return len(DEFAULT_EXPORT_PATTERN.findall(code))


# =============================================================================
# RULE TABLES
# =============================================================================

Rule = Tuple[str, Callable[[str], bool]]

COMMON_RULES: List[Rule] = [
    ("descriptive prose instead of code", looks_like_prose),
    ("markdown embedded in source", has_markdown),
]

PAGE_RULES: List[Rule] = COMMON_RULES + [
    ("leaked undefined/null token", has_leaked_tokens),
    ("missing single default export", lambda code: default_export_count(_strip_comments(code)) != 1),
    ("no markup returned", lambda code: not MARKUP_RETURN_PATTERN.search(_strip_comments(code))),
    ("unbalanced braces", lambda code: unbalanced_delimiters(_strip_comments(code))),
    ("unterminated markup tag", lambda code: tag_imbalance(_strip_comments(code)) is not None),
]

# Shared components may only have named exports (ui/button.tsx)
COMPONENT_RULES: List[Rule] = COMMON_RULES + [
    ("leaked undefined/null token", has_leaked_tokens),
    ("more than one default export", lambda code: default_export_count(_strip_comments(code)) > 1),
    ("no exports", lambda code: not re.search(r"\bexport\b", _strip_comments(code))),
    ("unbalanced braces", lambda code: unbalanced_delimiters(_strip_comments(code))),
    ("unterminated markup tag", lambda code: tag_imbalance(_strip_comments(code)) is not None),
]

ENTRY_RULES: List[Rule] = COMMON_RULES + [
    ("leaked undefined/null token", has_leaked_tokens),
    ("unbalanced braces", lambda code: unbalanced_delimiters(_strip_comments(code))),
    ("unterminated markup tag", lambda code: tag_imbalance(_strip_comments(code)) is not None),
]

SCRIPT_RULES: List[Rule] = COMMON_RULES + [
    ("leaked undefined/null token", lambda code: code.strip().rstrip(";") in ("undefined", "null", "[object Object]")),
    ("unbalanced braces", lambda code: unbalanced_delimiters(_strip_comments(code))),
]

CONFIG_RULES: List[Rule] = SCRIPT_RULES + [
    ("config without export", lambda code: not re.search(r"module\.exports|export\s+default|export\s*\{", code)),
]


def _css_body(content: str) -> str:
    return CSS_LINE_COMMENT_PATTERN.sub("", CSS_COMMENT_PATTERN.sub("", content)).strip()


STYLE_RULES: List[Rule] = COMMON_RULES + [
    ("comments-only stylesheet", lambda css: not _css_body(css)),
    ("leaked undefined/null token", lambda css: _css_body(css).rstrip(";") in ("undefined", "null", "[object Object]")),
    ("unbalanced braces", lambda css: _css_body(css).count("{") != _css_body(css).count("}")),
    ("no rules or directives", lambda css: "{" not in _css_body(css) and "@" not in _css_body(css)),
]

# Indented Sass has no braces; only prose, fences and emptiness apply
SASS_RULES: List[Rule] = COMMON_RULES + [
    ("comments-only stylesheet", lambda css: not _css_body(css)),
]

VUE_RULES: List[Rule] = COMMON_RULES + [
    ("missing template block", lambda sfc: "<template" not in sfc or "</template>" not in sfc),
    ("unterminated markup tag", lambda sfc: sfc.count("<template") != sfc.count("</template>")
        or sfc.count("<script") != sfc.count("</script>")
        or sfc.count("<style") != sfc.count("</style>")),
]

HTML_RULES: List[Rule] = [
    ("descriptive prose instead of markup", looks_like_prose),
    ("markdown embedded in markup", lambda html: bool(FENCE_PATTERN.search(html))),
    ("no markup", lambda html: not re.search(r"<\s*(html|body|head|div|main|script|!doctype)", html, re.IGNORECASE)),
]

RULES: Dict[str, List[Rule]] = {
    "page": PAGE_RULES,
    "component": COMPONENT_RULES,
    "entry": ENTRY_RULES,
    "script": SCRIPT_RULES,
    "config": CONFIG_RULES,
    "style": STYLE_RULES,
    "sass": SASS_RULES,
    "vue": VUE_RULES,
    "html": HTML_RULES,
}


# =============================================================================
# SANITIZER
# =============================================================================

class ContentSanitizer:
    """
    Validates generated files and replaces or repairs the broken ones.

    `sanitize` is total: it returns a non-empty string for every input and
    never raises. Internal failures are handled as ContentValidationFailure
    and answered with the fallback for the file kind.
    """

    def __init__(self, framework=None):
        self.framework: Optional[Framework] = normalize_framework(framework) if framework else None
        self._scaffold_cache: Dict[Framework, Dict[str, str]] = {}

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(self, path: str, content: str = "") -> str:
        """Return the sanitizer kind for a path (content refines .js entry points)."""
        kind = guess_file_kind(path)
        pure = PurePosixPath(path)
        suffix = pure.suffix.lower()

        if kind == "script" and suffix == ".js" and is_entry_script(path) and MARKUP_RETURN_PATTERN.search(content):
            kind = "component"
        if kind == "component":
            if self._is_bootstrap(pure):
                kind = "entry"
            elif self._is_route_entry(pure):
                kind = "page"
        if kind == "style" and suffix == ".sass":
            kind = "sass"
        return kind

    @staticmethod
    def _is_bootstrap(pure: PurePosixPath) -> bool:
        """main.jsx / src/index.jsx mount the app and export nothing."""
        stem = pure.stem.lower()
        if stem == "main":
            return True
        return stem == "index" and not {"pages", "app", "components"} & set(pure.parts[:-1])

    @staticmethod
    def _is_route_entry(pure: PurePosixPath) -> bool:
        """Files the framework imports for their default export (pages, layouts, App)."""
        if pure.stem.lower() in ROUTE_STEMS:
            return True
        return "pages" in pure.parts[:-1]

    def validate(self, path: str, content: str) -> Optional[str]:
        """
        Run the rule table for the file's kind.

        Returns:
            Name of the first rule that failed, or None if the content is acceptable
        """
        kind = self.classify(path, content)
        if not content.strip():
            return "empty content"
        if kind == "json":
            return None if self._parse_json(content) is not None else "invalid JSON"
        for name, predicate in RULES.get(kind, []):
            if predicate(content):
                return name
        return None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def sanitize(self, path: str, content, framework=None) -> str:
        """
        Return usable content for `path`.

        Args:
            path: Relative path of the generated file
            content: Raw generated content (never modified in place)
            framework: Optional framework hint used to pick fallbacks

        Returns:
            The original content, a lightly repaired version, or a fallback
        """
        framework = normalize_framework(framework) if framework else self.framework
        try:
            text = self._coerce(content)
            kind = self.classify(path, text)
            failed = self.validate(path, text)

            if failed is not None:
                if kind == "json" and failed == "invalid JSON":
                    extracted = self._extract_json(text)
                    if extracted is not None:
                        logger.info("Extracted JSON object from %s", path)
                        return extracted
                raise ContentValidationFailure(path, failed)

            if kind in ("page", "component", "entry"):
                text = self._repair_component(path, text, framework)
            return text or "\n"

        except ContentValidationFailure as failure:
            logger.warning("Replacing %s with fallback content (%s)", path, failure.rule)
            return self.fallback(path, framework)
        except Exception:  # any bug in a heuristic must not block the build
            logger.exception("Sanitizer failed on %s, using fallback content", path)
            return self.fallback(path, framework)

    def sanitize_files(self, files: Dict[str, str], framework=None) -> Dict[str, str]:
        """Sanitize a whole file set, returning a new mapping."""
        return {path: self.sanitize(path, content, framework) for path, content in files.items()}

    # -------------------------------------------------------------------------
    # Fallbacks
    # -------------------------------------------------------------------------

    def fallback(self, path: str, framework: Optional[Framework] = None) -> str:
        """Known-good replacement for `path` (framework scaffold first, then by kind)."""
        framework = framework or self.framework
        if framework is not None:
            scaffold = self._scaffold(framework)
            if path in scaffold:
                return scaffold[path]

        name = PurePosixPath(path).name
        suffix = PurePosixPath(path).suffix.lower()
        kind = self.classify(path)

        if kind in ("page", "component", "entry"):
            if kind == "entry" and suffix in (".jsx", ".tsx", ".js"):
                return templates.REACT_MAIN_JSX
            return templates.fallback_component(path)
        if kind == "vue":
            return templates.VUE_APP
        if kind == "sass":
            return "body\n  margin: 0\n  font-family: system-ui, sans-serif\n"
        if kind == "style":
            return templates.GLOBALS_CSS if name == "globals.css" else templates.PLAIN_CSS
        if kind == "json":
            return templates.JSON_FALLBACKS.get(name, "{}\n")
        if kind == "config":
            if name in templates.CONFIG_FALLBACKS:
                return templates.CONFIG_FALLBACKS[name]
            return "export default {};\n" if suffix in (".mjs", ".ts") else templates.EMPTY_CONFIG
        if kind == "script":
            return templates.EMPTY_MODULE
        if kind == "html":
            if framework == Framework.REACT:
                return templates.index_html("root", "/src/main.jsx")
            if framework == Framework.VUE:
                return templates.index_html("app", "/src/main.js")
            return templates.index_html("app", "/main.js")
        return "\n"

    def _scaffold(self, framework: Framework) -> Dict[str, str]:
        if framework not in self._scaffold_cache:
            files = templates.scaffold_files(framework, "app")
            if framework == Framework.NEXTJS:
                files.update(templates.scaffold_files(framework, "src/app"))
            # Build/config manifests are merged by the materializer, not swapped here
            for key in ("Dockerfile", ".dockerignore", ".npmrc", ".env"):
                files.pop(key, None)
            self._scaffold_cache[framework] = files
        return self._scaffold_cache[framework]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _coerce(content) -> str:
        if content is None:
            return ""
        if isinstance(content, (bytes, bytearray)):
            content = decode_output(bytes(content))
        elif not isinstance(content, str):
            content = str(content)
        return content.replace("\x00", "")

    @staticmethod
    def _parse_json(content: str):
        try:
            return json.loads(content)
        except ValueError:
            return None

    def _extract_json(self, content: str) -> Optional[str]:
        """Try the outermost {...} slice (fenced or prefixed JSON)."""
        first = content.find("{")
        last = content.rfind("}")
        if first == -1 or last <= first:
            return None
        candidate = content[first:last + 1]
        parsed = self._parse_json(candidate)
        if not isinstance(parsed, dict):
            return None
        return json.dumps(parsed, indent=2) + "\n"

    def _repair_component(self, path: str, code: str, framework: Optional[Framework] = None) -> str:
        """Prefix missing React imports and the client directive; never rewrite bodies."""
        directive = ""
        # Comments are blanked in place, so offsets line up with the original
        match = USE_CLIENT_PATTERN.match(_strip_comments(code))
        if match:
            directive = "'use client'\n"
            body = code[match.end():]
        else:
            body = code

        stripped = _strip_comments(body)
        prefix: List[str] = []

        default_name, namespace, named = None, None, set()
        for imp in REACT_IMPORT_PATTERN.finditer(stripped):
            default_name = default_name or imp.group("default")
            namespace = namespace or imp.group("namespace")
            if imp.group("named"):
                named.update(
                    part.split(" as ")[-1].strip()
                    for part in imp.group("named").split(",")
                    if part.strip()
                )

        if REACT_NAMESPACE_USAGE.search(stripped) and "React" not in (default_name, namespace):
            prefix.append("import React from 'react';")

        used_hooks = sorted(set(HOOK_USAGE_PATTERN.findall(stripped)))
        missing = [hook for hook in used_hooks if hook not in named]
        if missing:
            prefix.append("import { " + ", ".join(missing) + " } from 'react';")

        pure = PurePosixPath(path)
        if framework is None:
            next_client_tree = "app" in pure.parts[:-1]
        else:
            next_client_tree = framework == Framework.NEXTJS
        is_error_boundary = pure.stem.lower() in ("error", "global-error") and "app" in pure.parts[:-1]
        needs_client = (
            next_client_tree
            and not directive
            and (used_hooks or is_error_boundary or EVENT_HANDLER_PATTERN.search(stripped))
            and not ASYNC_DEFAULT_PATTERN.search(stripped)
            and not METADATA_EXPORT_PATTERN.search(stripped)
        )
        if not prefix and not needs_client:
            return code

        if prefix:
            logger.info("Added missing React imports to %s", path)
        if needs_client:
            logger.info("Marked %s as a client component", path)
            directive = "'use client'\n"

        head = directive + "\n" if directive else ""
        if prefix:
            head += "\n".join(prefix) + "\n"
        return head + body.lstrip("\n")


# Default instance used by the module-level helpers
_default_sanitizer = ContentSanitizer()


def sanitize_file(path: str, content, framework=None) -> str:
    """Sanitize a single file with the default sanitizer."""
    return _default_sanitizer.sanitize(path, content, framework)


def sanitize_files(files: Dict[str, str], framework=None) -> Dict[str, str]:
    """Sanitize a whole file set with the default sanitizer."""
    return _default_sanitizer.sanitize_files(files, framework)
