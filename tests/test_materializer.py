import json

import pytest

from preview_sandbox.schemas import Framework
from preview_sandbox.sandbox import templates
from preview_sandbox.sandbox.errors import MaterializationError
from preview_sandbox.sandbox.materializer import (
    FileMaterializer,
    detect_app_dir,
    merge_package_json,
)


@pytest.fixture
def materializer():
    return FileMaterializer()


PAGE = "export default function Page() {\n  return <h1>Hi</h1>\n}\n"


class TestScaffold:
    def test_nextjs_scaffold_fills_gaps(self, materializer, tmp_path):
        written = materializer.materialize(tmp_path, {"app/page.tsx": PAGE}, Framework.NEXTJS)

        assert written[0] == "app/page.tsx"
        assert (tmp_path / "app" / "page.tsx").read_text() == PAGE
        for name in ("package.json", "Dockerfile", "next.config.js", "app/layout.tsx", "app/globals.css"):
            assert (tmp_path / name).exists(), name
        package = json.loads((tmp_path / "package.json").read_text())
        assert package["scripts"]["dev"] == templates.DEV_SCRIPTS[Framework.NEXTJS]

    @pytest.mark.parametrize("framework, expected", [
        (Framework.REACT, ["vite.config.js", "index.html", "src/main.jsx", "src/App.jsx"]),
        (Framework.VUE, ["vite.config.js", "index.html", "src/main.js", "src/App.vue"]),
        (Framework.VANILLA, ["index.html", "main.js", "style.css"]),
    ])
    def test_vite_scaffolds(self, materializer, tmp_path, framework, expected):
        materializer.materialize(tmp_path, {}, framework)

        for name in expected + ["package.json", "Dockerfile", ".env"]:
            assert (tmp_path / name).exists(), name

    def test_same_module_under_other_extension_counts(self, materializer):
        missing = materializer.scaffold_for({"app/page.jsx": PAGE, "app/layout.js": "x"}, Framework.NEXTJS)

        assert "app/page.tsx" not in missing
        assert "app/layout.tsx" not in missing
        assert "app/loading.tsx" in missing

    def test_src_app_directory(self, materializer):
        files = {"src/app/page.tsx": PAGE}

        missing = materializer.scaffold_for(files, Framework.NEXTJS)

        assert detect_app_dir(files) == "src/app"
        assert "src/app/layout.tsx" in missing
        assert "app/layout.tsx" not in missing

    def test_error_boundaries_are_scaffolded(self, materializer, tmp_path):
        materializer.materialize(tmp_path, {"src/app/page.tsx": PAGE, "src/app/error.jsx": "x"}, Framework.NEXTJS)

        global_error = (tmp_path / "src" / "app" / "global-error.tsx").read_text()
        assert global_error == templates.global_error_component()
        assert global_error.startswith("'use client'")
        assert "<html" in global_error
        # The user's own error boundary is kept
        assert not (tmp_path / "src" / "app" / "error.tsx").exists()
        assert (tmp_path / "src" / "app" / "error.jsx").read_text() == "x"

    def test_error_boundaries_fill_a_bare_app_directory(self, materializer):
        missing = materializer.scaffold_for({"app/page.tsx": PAGE}, Framework.NEXTJS)

        assert missing["app/error.tsx"] == templates.error_component()
        assert "app/global-error.tsx" in missing

    def test_pages_router_skips_app_router_files(self, materializer):
        missing = materializer.scaffold_for({"pages/index.tsx": PAGE}, Framework.NEXTJS)

        assert "app/page.tsx" not in missing
        assert "app/layout.tsx" not in missing
        assert "app/global-error.tsx" not in missing
        assert "next.config.js" in missing

    def test_user_files_are_not_overwritten(self, materializer, tmp_path):
        files = {"Dockerfile": "FROM node:18\n", "src/App.jsx": PAGE}

        materializer.materialize(tmp_path, files, Framework.REACT)

        assert (tmp_path / "Dockerfile").read_text() == "FROM node:18\n"
        assert (tmp_path / "src" / "App.jsx").read_text() == PAGE


class TestPackageJson:
    def test_user_entries_win_and_dev_is_pinned(self):
        user = json.dumps({
            "name": "my-app",
            "dependencies": {"react": "^18.3.1", "framer-motion": "^11.0.0"},
            "scripts": {"dev": "next dev", "test": "jest"},
        })

        merged = json.loads(merge_package_json(user, Framework.NEXTJS))

        assert merged["name"] == "my-app"
        assert merged["dependencies"]["react"] == "^18.3.1"
        assert merged["dependencies"]["framer-motion"] == "^11.0.0"
        assert merged["dependencies"]["next"] == "14.2.5"
        assert merged["scripts"]["test"] == "jest"
        assert merged["scripts"]["build"] == "next build"
        assert merged["scripts"]["dev"] == templates.DEV_SCRIPTS[Framework.NEXTJS]
        assert "tailwindcss" in merged["devDependencies"]

    @pytest.mark.parametrize("content", ["not json", "[1, 2]", ""])
    def test_unusable_package_json_uses_template(self, content):
        merged = json.loads(merge_package_json(content, Framework.VUE))

        assert merged == templates.PACKAGE_TEMPLATES[Framework.VUE]


class TestFailures:
    def test_unwritable_directory(self, materializer, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")

        with pytest.raises(MaterializationError) as excinfo:
            materializer.materialize(blocker / "work", {"index.html": "<p>hi</p>"}, Framework.VANILLA)
        assert str(blocker) in excinfo.value.message
