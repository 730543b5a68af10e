"""Shared fixtures: a small e-mail project on disk."""

from pathlib import Path

import pytest

from mailforge.config import BuildSettings

LAYOUT = (
    "<!DOCTYPE html>\n"
    "<html>\n"
    "<head>\n"
    '  <link rel="stylesheet" type="text/css" href="css/app.css">\n'
    "  <!-- <style> -->\n"
    "</head>\n"
    "<body>\n"
    "{{ body }}\n"
    "</body>\n"
    "</html>\n"
)

STYLESHEET = (
    '@import "settings";\n'
    "body { color: red }\n"
    ".lead { font-size: 20px } // headline size\n"
    ".unused { color: green }\n"
    "@media (max-width:480px){.lead{font-size:16px}}\n"
)


def write(root: Path, relative: str, content: str | bytes) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project 'default' under tmp_path/projects; returns its source dir."""
    src = tmp_path / "projects" / "default"
    write(src, "layouts/default.html", LAYOUT)
    write(
        src,
        "pages/index.html",
        '---\ntitle: Hello\n---\n<p class="lead">{{ title }}</p>\n<img src="assets/img/logo.png">\n',
    )
    write(src, "pages/news.html", '<div class="news">{% include "footer" %}</div>\n')
    write(src, "pages/archive/old.html", "<p>old</p>\n")
    write(src, "partials/footer.html", "<span>footer v1</span>")
    write(src, "assets/scss/app.scss", STYLESHEET)
    write(src, "assets/scss/_settings.scss", "p { margin: 0 }\n")
    write(src, "assets/img/logo.png", b"\x89PNG logo")
    write(src, "assets/img/archive/old.png", b"\x89PNG old")
    return src


@pytest.fixture
def settings(project: Path) -> BuildSettings:
    return BuildSettings(root=project.parent.parent, project="default")
