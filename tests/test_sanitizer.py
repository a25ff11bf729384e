import time

import pytest

from preview_sandbox.schemas import Framework
from preview_sandbox.sandbox import sanitizer as sanitizer_module
from preview_sandbox.sandbox import templates
from preview_sandbox.sandbox.sanitizer import (
    MARKUP_TOO_COMPLEX,
    ContentSanitizer,
    sanitize_file,
    tag_imbalance,
)


@pytest.fixture
def sanitizer():
    return ContentSanitizer()


HOME_PAGE = """export default function Home() {
  return (
    <main className="p-4">
      <h1>Hello</h1>
      <p>It's working</p>
    </main>
  )
}
"""

COUNTER = """export default function Counter() {
  const [count, setCount] = useState(0)
  return <button onClick={() => setCount(count + 1)}>{count}</button>
}
"""

GENERIC_LIST = """import { useState } from 'react'

export function List<T,>({ items }: { items: T[] }) {
  const [selected, setSelected] = useState<string | null>(null)
  const big = items.length > 3 && items.length < 10
  return <ul>{items.map((item, i) => <li key={i}>{String(item)}</li>)}</ul>
}
"""

SHADCN_BUTTON = """import * as React from 'react'

export interface ButtonProps extends React.ButtonHTMLAttributes<HTMLButtonElement> {}

export const Button = React.forwardRef<HTMLButtonElement, ButtonProps>(({ className, ...props }, ref) => {
  return <button className={className} ref={ref} {...props} />
})
Button.displayName = 'Button'
"""


class TestClassify:
    @pytest.mark.parametrize("path, content, kind", [
        ("app/page.tsx", "", "page"),
        ("pages/about.jsx", "", "page"),
        ("src/App.jsx", "", "page"),
        ("src/main.jsx", "", "entry"),
        ("components/ui/button.tsx", "", "component"),
        ("src/pages/index.js", "export default function Home() { return <h1>Hi</h1> }", "page"),
        ("src/pages/index.js", "export const x = 1", "script"),
        ("src/utils.ts", "", "script"),
        ("vite.config.js", "", "config"),
        ("styles/theme.sass", "", "sass"),
        ("app/globals.css", "", "style"),
        ("src/App.vue", "", "vue"),
        ("package.json", "", "json"),
        ("README.md", "", "other"),
    ])
    def test_kinds(self, sanitizer, path, content, kind):
        assert sanitizer.classify(path, content) == kind


class TestComponents:
    def test_valid_page_is_unchanged(self, sanitizer):
        assert sanitizer.sanitize("app/page.tsx", HOME_PAGE, Framework.NEXTJS) == HOME_PAGE

    def test_empty_page_gets_fallback(self, sanitizer):
        assert sanitizer.sanitize("app/page.tsx", "") == templates.page_component("Page")

    @pytest.mark.parametrize("content", [
        "Here is the updated component:\n\nexport default function Page() {\n  return <p>x</p>\n}\n",
        "```tsx\nexport default function Page() {\n  return <p>x</p>\n}\n```\n",
        "export default function Page() {\n  return <div>hi</div>\n",
        "export default function Page() {\n  return <div><span></div>\n}\n",
        "export default function Page() {\n  return <div>undefined</div>\n}\n",
        "undefined",
    ])
    def test_broken_page_is_replaced(self, sanitizer, content):
        result = sanitizer.sanitize("app/page.tsx", content, Framework.NEXTJS)
        assert result == templates.page_component()

    def test_two_default_exports(self, sanitizer):
        content = (
            "export default function A() {\n  return <div>A</div>\n}\n"
            "export default function B() {\n  return <div>B</div>\n}\n"
        )
        assert sanitizer.validate("components/Hero.tsx", content) == "more than one default export"
        assert sanitizer.sanitize("components/Hero.tsx", content) == templates.generic_component("Hero")

    def test_validate_names_the_failing_rule(self, sanitizer):
        content = "export default function Page() {\n  return null\n}\n"
        assert sanitizer.validate("app/page.tsx", content) == "no markup returned"
        assert sanitizer.validate("app/page.tsx", "  \n") == "empty content"
        assert sanitizer.validate("app/page.tsx", HOME_PAGE) is None

    def test_generics_and_comparisons_are_not_tags(self, sanitizer):
        assert tag_imbalance(GENERIC_LIST) is None
        assert sanitizer.sanitize("components/List.tsx", GENERIC_LIST) == GENERIC_LIST

    def test_nested_attribute_markup_is_still_counted(self):
        content = "const x = (\n  <Card footer={<div>done</div>} header={<Title />}>\n    body\n  </Card>\n)\n"
        assert tag_imbalance(content) is None

    def test_deeply_nested_attribute_braces_give_up(self):
        assert tag_imbalance("<a {" * 5000 + "}" * 5000) == MARKUP_TOO_COMPLEX

    def test_large_crafted_component_is_replaced_quickly(self, sanitizer):
        content = "export function Widget() {\n  return null\n}\n" + "<a {" * 20000 + "}" * 20000 + "\n"

        started = time.monotonic()
        result = sanitizer.sanitize("components/Widget.tsx", content)

        assert time.monotonic() - started < 10
        assert result == templates.generic_component("Widget")

    def test_arrow_attributes_and_apostrophes(self, sanitizer):
        content = """export default function App() {
  return (
    <div>
      <p>Don't worry, it's fine</p>
      <button onClick={() => alert('hi')}>Click</button>
    </div>
  )
}
"""
        assert sanitizer.sanitize("src/App.jsx", content, Framework.REACT) == content

    def test_named_export_component_is_kept(self, sanitizer):
        assert sanitizer.sanitize("components/ui/button.tsx", SHADCN_BUTTON) == SHADCN_BUTTON

    def test_bootstrap_entry_is_kept(self, sanitizer):
        main = templates.REACT_MAIN_JSX
        assert sanitizer.sanitize("src/main.jsx", main, Framework.REACT) == main

    def test_nul_bytes_are_stripped(self, sanitizer):
        assert sanitizer.sanitize("app/page.tsx", HOME_PAGE.replace("{\n", "{\x00\n", 1)) == HOME_PAGE


class TestRepairs:
    def test_missing_hook_import_and_client_directive(self, sanitizer):
        result = sanitizer.sanitize("components/Counter.tsx", COUNTER, Framework.NEXTJS)

        assert result == "'use client'\n\nimport { useState } from 'react';\n" + COUNTER

    def test_no_client_directive_outside_nextjs(self, sanitizer):
        result = sanitizer.sanitize("src/components/Counter.jsx", COUNTER, Framework.REACT)

        assert result == "import { useState } from 'react';\n" + COUNTER

    def test_existing_directive_stays_first(self, sanitizer):
        content = (
            "'use client'\n\nexport default function Page() {\n"
            "  const [v] = useState(1)\n  return <p>{v}</p>\n}\n"
        )

        result = sanitizer.sanitize("app/page.tsx", content)

        assert result == (
            "'use client'\n\nimport { useState } from 'react';\n"
            "export default function Page() {\n  const [v] = useState(1)\n  return <p>{v}</p>\n}\n"
        )

    def test_directive_after_comment_is_recognized(self, sanitizer):
        content = "// counter widget\n'use client'\nimport { useState } from 'react'\n\n" + COUNTER
        assert sanitizer.sanitize("app/counter/page.tsx", content, Framework.NEXTJS) == content

    def test_react_namespace_import(self, sanitizer):
        content = (
            "export default function Card() {\n  const ref = React.useRef(null)\n"
            "  return <div ref={ref}>card</div>\n}\n"
        )

        result = sanitizer.sanitize("src/components/Card.jsx", content, Framework.REACT)

        assert result == "import React from 'react';\n" + content

    def test_error_boundary_becomes_client_component(self, sanitizer):
        content = "export default function Error({ reset }) {\n  return <button>Retry</button>\n}\n"
        assert sanitizer.sanitize("app/dashboard/error.tsx", content) == "'use client'\n\n" + content

    def test_global_error_boundary(self, sanitizer):
        content = "export default function GlobalError() {\n  return <html><body>Oops</body></html>\n}\n"

        assert sanitizer.sanitize("app/global-error.tsx", content) == "'use client'\n\n" + content
        assert sanitizer.sanitize("app/global-error.tsx", "Here is the global error page.") == (
            templates.global_error_component()
        )

    def test_metadata_export_keeps_server_component(self, sanitizer):
        content = (
            "export const metadata = { title: 'About' }\n\n"
            "export default function About() {\n  return <a onClick={() => {}}>About</a>\n}\n"
        )
        assert sanitizer.sanitize("app/about/page.tsx", content, Framework.NEXTJS) == content


class TestStyles:
    def test_comments_only_globals(self, sanitizer):
        result = sanitizer.sanitize("app/globals.css", "/* styles go here */\n", Framework.NEXTJS)
        assert result == templates.GLOBALS_CSS

    @pytest.mark.parametrize("css", [
        "@tailwind base;\n@tailwind components;\n@tailwind utilities;\n",
        ".card {\n  padding: 1rem;\n}\n",
    ])
    def test_valid_stylesheets_are_kept(self, sanitizer, css):
        assert sanitizer.sanitize("src/index.css", css) == css

    def test_unbalanced_stylesheet(self, sanitizer):
        assert sanitizer.sanitize("styles/card.css", ".card {\n  padding: 1rem;\n") == templates.PLAIN_CSS

    def test_indented_sass_is_kept(self, sanitizer):
        sass = "body\n  margin: 0\n"
        assert sanitizer.sanitize("styles/theme.sass", sass) == sass


class TestDataAndConfig:
    def test_valid_json_is_kept(self, sanitizer):
        content = '{"name": "demo", "private": true}\n'
        assert sanitizer.sanitize("package.json", content) == content

    def test_fenced_json_is_extracted(self, sanitizer):
        content = 'Here is the file:\n```json\n{"name": "demo"}\n```\n'
        assert sanitizer.sanitize("package.json", content) == '{\n  "name": "demo"\n}\n'

    def test_garbage_json(self, sanitizer):
        assert sanitizer.sanitize("tsconfig.json", "not json at all") == templates.TSCONFIG
        assert sanitizer.sanitize("data/items.json", "[1, 2") == "{}\n"

    def test_config_fallbacks(self, sanitizer):
        assert sanitizer.sanitize("next.config.js", "Sure, here's the config") == templates.NEXT_CONFIG
        assert sanitizer.validate("tailwind.config.js", "const config = { content: [] }\n") == "config without export"
        assert sanitizer.sanitize("tailwind.config.js", "const config = { content: [] }\n") == templates.TAILWIND_CONFIG
        assert sanitizer.sanitize("jest.config.mjs", "const x = {") == "export default {};\n"

    def test_html_fallback_follows_framework(self, sanitizer):
        result = sanitizer.sanitize("index.html", "Here is your HTML page.", Framework.REACT)
        assert result == templates.index_html("root", "/src/main.jsx")

    def test_other_files(self, sanitizer):
        assert sanitizer.sanitize("README.md", "# Demo\n") == "# Demo\n"
        assert sanitizer.sanitize("README.md", "") == "\n"


class TestVue:
    def test_valid_single_file_component(self, sanitizer):
        sfc = "<template>\n  <div>{{ msg }}</div>\n</template>\n\n<script setup>\nconst msg = 'hi'\n</script>\n"
        assert sanitizer.sanitize("src/App.vue", sfc, Framework.VUE) == sfc

    def test_missing_template(self, sanitizer):
        sfc = "<script setup>\nconst msg = 'hi'\n</script>\n"
        assert sanitizer.validate("src/App.vue", sfc) == "missing template block"
        assert sanitizer.sanitize("src/App.vue", sfc, Framework.VUE) == templates.VUE_APP


class TestTotality:
    @pytest.mark.parametrize("path, content", [
        ("app/page.tsx", None),
        ("app/page.jsx", b"export default function Page() { return <p>x</p> }"),
        ("data.json", 123),
        ("style.css", "   "),
        ("src/main.js", "\x00\x00"),
        ("weird/file.unknown", ""),
    ])
    def test_always_returns_text(self, sanitizer, path, content):
        result = sanitizer.sanitize(path, content)
        assert isinstance(result, str)
        assert result

    def test_rule_errors_fall_back(self, sanitizer, monkeypatch):
        def explode(css):
            raise RuntimeError("rule bug")

        monkeypatch.setitem(sanitizer_module.RULES, "style", [("exploding rule", explode)])

        assert sanitizer.sanitize("src/theme.css", ".a { color: red; }") == templates.PLAIN_CSS

    def test_sanitize_files_returns_new_mapping(self):
        files = {"app/page.tsx": "", "app/globals.css": ".a { color: red; }\n"}

        result = ContentSanitizer(Framework.NEXTJS).sanitize_files(files)

        assert files["app/page.tsx"] == ""
        assert result["app/page.tsx"] == templates.page_component()
        assert result["app/globals.css"] == files["app/globals.css"]

    def test_module_helper(self):
        assert sanitize_file("src/index.css", "") == templates.PLAIN_CSS
