import pytest
from pydantic import ValidationError

from preview_sandbox.schemas import Framework, SandboxRequest, normalize_framework, normalize_path


class TestFramework:
    @pytest.mark.parametrize("value, expected", [
        ("next", Framework.NEXTJS),
        ("Next.js", Framework.NEXTJS),
        (" react ", Framework.REACT),
        ("vue.js", Framework.VUE),
        ("html", Framework.VANILLA),
        ("svelte", Framework.VANILLA),
        (None, Framework.VANILLA),
        (Framework.VUE, Framework.VUE),
    ])
    def test_aliases(self, value, expected):
        assert normalize_framework(value) is expected


class TestPaths:
    @pytest.mark.parametrize("raw, expected", [
        ("./app/page.tsx", "app/page.tsx"),
        ("/src//App.jsx", "src/App.jsx"),
        ("src\\main.jsx", "src/main.jsx"),
        ("components/./ui/button.tsx", "components/ui/button.tsx"),
    ])
    def test_normalized(self, raw, expected):
        assert normalize_path(raw) == expected

    @pytest.mark.parametrize("raw", ["", "./", "../etc/passwd", "app/../../x"])
    def test_rejected(self, raw):
        with pytest.raises(ValueError):
            normalize_path(raw)


class TestSandboxRequest:
    def test_files_from_mapping(self):
        request = SandboxRequest(
            project_ref=" p1 ",
            framework="next",
            files={"./app/page.tsx": "x", "app/globals.css": None},
        )

        assert request.project_ref == "p1"
        assert request.framework is Framework.NEXTJS
        assert request.files == {"app/page.tsx": "x", "app/globals.css": ""}

    def test_files_from_records(self):
        request = SandboxRequest(
            project_ref="p1",
            files=[{"path": "/src/App.jsx", "content": "a"}, {"path": "index.html"}],
        )

        assert request.files == {"src/App.jsx": "a", "index.html": ""}
        assert [record.path for record in request.records()] == ["src/App.jsx", "index.html"]

    @pytest.mark.parametrize("kwargs", [
        {"project_ref": "   "},
        {"project_ref": "p1", "files": {"../escape.js": "x"}},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            SandboxRequest(**kwargs)
