"""Source tree - one project's input files, partitioned by namespace.

Logical paths are relative to the namespace directory and always use
forward slashes. Anything under an ``archive`` directory is excluded from
pages and images.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

# namespace -> (directory under the project, file suffixes or None for any)
NAMESPACES: dict[str, tuple[str, tuple[str, ...] | None]] = {
    "pages": ("pages", (".html",)),
    "layouts": ("layouts", (".html",)),
    "partials": ("partials", (".html",)),
    "helpers": ("helpers", (".py",)),
    "styles": ("assets/scss", (".scss", ".css")),
    "images": ("assets/img", None),
}

ARCHIVED = {"pages", "images"}
ARCHIVE_DIR = "archive"


def digest(content: bytes) -> str:
    """Compute the SHA256 digest used to identify file contents."""
    return hashlib.sha256(content).hexdigest()[:16]


def is_archived(logical_path: str) -> bool:
    return ARCHIVE_DIR in PurePosixPath(logical_path).parts[:-1]


def template_name(logical_path: str) -> str:
    """Logical template name: path without its extension ('nav/menu')."""
    return str(PurePosixPath(logical_path).with_suffix(""))


@dataclass(frozen=True)
class SourceFile:
    """A single input file."""

    path: str
    content: bytes
    digest: str

    @classmethod
    def from_bytes(cls, path: str, content: bytes) -> SourceFile:
        return cls(path=path, content=content, digest=digest(content))

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")


@dataclass
class SourceTree:
    """Project input files keyed by namespace and logical path."""

    root: Path
    files: dict[str, dict[str, SourceFile]] = field(default_factory=dict)

    @classmethod
    def scan(cls, root: Path) -> SourceTree:
        """Read every file of every namespace under a project root."""
        tree = cls(root=root)
        for namespace, (subdir, suffixes) in NAMESPACES.items():
            base = root / subdir
            entries: dict[str, SourceFile] = {}
            if base.is_dir():
                for path in sorted(base.rglob("*")):
                    if not path.is_file():
                        continue
                    if suffixes is not None and path.suffix not in suffixes:
                        continue
                    logical = path.relative_to(base).as_posix()
                    if namespace in ARCHIVED and is_archived(logical):
                        continue
                    entries[logical] = SourceFile.from_bytes(logical, path.read_bytes())
            tree.files[namespace] = entries
        return tree

    def namespace(self, name: str) -> dict[str, SourceFile]:
        if name not in NAMESPACES:
            raise KeyError(f"Unknown namespace: {name}")
        return self.files.setdefault(name, {})

    def add(self, namespace: str, path: str, content: bytes | str) -> SourceFile:
        """Add or replace a file in memory."""
        if isinstance(content, str):
            content = content.encode("utf-8")
        entry = SourceFile.from_bytes(path, content)
        self.namespace(namespace)[path] = entry
        return entry

    def directory(self, namespace: str) -> Path:
        return self.root / NAMESPACES[namespace][0]

    @property
    def pages(self) -> dict[str, SourceFile]:
        return self.namespace("pages")

    @property
    def layouts(self) -> dict[str, SourceFile]:
        return self.namespace("layouts")

    @property
    def partials(self) -> dict[str, SourceFile]:
        return self.namespace("partials")

    @property
    def styles(self) -> dict[str, SourceFile]:
        return self.namespace("styles")

    @property
    def helpers(self) -> dict[str, SourceFile]:
        return self.namespace("helpers")

    @property
    def images(self) -> dict[str, SourceFile]:
        return self.namespace("images")
