"""Template compiler - resolves pages against layouts and partials.

A page is a Jinja2 template with optional YAML front matter::

    ---
    layout: newsletter
    title: Spring sale
    ---
    <container>{% include "header" %} ...</container>

The page body is rendered first; the layout is then rendered with the same
variables plus ``body``. Partials are included by logical name (path under
``partials/`` without the extension).

Parsed layouts and partials live in a BuildCache owned by the caller; the
compiler never invalidates it.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable, Sequence

import yaml
from jinja2 import BaseLoader, Environment, Template, TemplateNotFound, TemplateSyntaxError
from jinja2.exceptions import TemplateError

from mailforge.compiler.helpers import load_helpers
from mailforge.exceptions import PageCompileError, UnresolvedReferenceError
from mailforge.source import SourceTree, is_archived

log = logging.getLogger(__name__)

LAYOUT_PREFIX = "layout:"

FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)

MarkupTransform = Callable[[str], str]


@dataclass
class CompiledDocument:
    """Flat markup for one page plus its output path."""

    source: str
    path: str
    markup: str


@dataclass
class CompileReport:
    """Result of compiling every page of a tree."""

    documents: list[CompiledDocument] = field(default_factory=list)
    errors: list[PageCompileError] = field(default_factory=list)
    processed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class BuildCache:
    """Parsed layout and partial templates keyed by template name.

    Invalidation is wholesale: any layout or partial change drops every
    entry, since the pages a shared partial affects are not tracked.
    """

    def __init__(self) -> None:
        self._templates: dict[str, Template] = {}
        self.generation = 0

    def get(self, name: str) -> Template | None:
        return self._templates.get(name)

    def put(self, name: str, template: Template) -> None:
        self._templates[name] = template

    def invalidate(self) -> None:
        log.debug(f"Invalidating build cache ({len(self._templates)} templates)")
        self._templates.clear()
        self.generation += 1

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)


class TreeLoader(BaseLoader):
    """Loads layouts and partials from a SourceTree through a BuildCache."""

    def __init__(self, tree: SourceTree, cache: BuildCache):
        self.tree = tree
        self.cache = cache

    def get_source(
        self, environment: Environment, template: str
    ) -> tuple[str, str | None, Callable[[], bool]]:
        if template.startswith(LAYOUT_PREFIX):
            files = self.tree.layouts
            name = template[len(LAYOUT_PREFIX):]
        else:
            files = self.tree.partials
            name = template

        for candidate in (f"{name}.html", name):
            entry = files.get(candidate)
            if entry is not None:
                return entry.text, None, lambda: True

        raise TemplateNotFound(template)

    def load(
        self,
        environment: Environment,
        name: str,
        globals: Any = None,
    ) -> Template:
        cached = self.cache.get(name)
        if cached is not None:
            return cached
        template = super().load(environment, name, globals)
        self.cache.put(name, template)
        return template


def split_front_matter(text: str) -> tuple[dict[str, Any], str]:
    """Split YAML front matter from a page body.

    Raises:
        ValueError: If the front matter is not a YAML mapping.
    """
    match = FRONT_MATTER.match(text)
    if not match:
        return {}, text

    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid front matter: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("front matter must be a mapping")

    return data, text[match.end():]


def output_path(page: str) -> str:
    """Logical output path for a page: same path, .html extension."""
    return str(PurePosixPath(page).with_suffix(".html"))


def relative_root(page: str) -> str:
    """Relative prefix from a page's output directory back to the output root."""
    depth = len(PurePosixPath(page).parts) - 1
    return posixpath.join(*([".."] * depth), "") if depth else ""


class PageCompiler:
    """Compiles pages of a SourceTree into flat markup.

    Args:
        tree: Project sources.
        cache: Shared BuildCache for layouts and partials.
        default_layout: Layout used when a page does not name one.
        transforms: Ordered markup-to-markup stages applied to each
            rendered page (e.g. the markup normalizer).
    """

    def __init__(
        self,
        tree: SourceTree,
        cache: BuildCache,
        default_layout: str = "default",
        transforms: Sequence[MarkupTransform] = (),
    ):
        self.tree = tree
        self.cache = cache
        self.default_layout = default_layout
        self.transforms = list(transforms)
        self.env = Environment(
            loader=TreeLoader(tree, cache),
            cache_size=0,
            autoescape=False,
            keep_trailing_newline=True,
        )
        for name, fn in load_helpers(tree).items():
            self.env.filters[name] = fn
            self.env.globals[name] = fn

    def pages(self) -> list[str]:
        """Pages eligible for compilation, in deterministic order."""
        return sorted(p for p in self.tree.pages if not is_archived(p))

    def compile_page(self, page: str) -> CompiledDocument:
        """Compile one page.

        Raises:
            UnresolvedReferenceError: If the layout or a partial is missing.
            PageCompileError: For front matter or template syntax errors.
        """
        entry = self.tree.pages.get(page)
        if entry is None:
            raise PageCompileError(page, "page not found")

        try:
            meta, body = split_front_matter(entry.text)
        except ValueError as e:
            raise PageCompileError(page, str(e)) from e

        layout = str(meta.pop("layout", self.default_layout))
        context = dict(meta)
        context.setdefault("page", PurePosixPath(page).stem)
        context.setdefault("root", relative_root(page))

        try:
            context["body"] = self.env.from_string(body).render(**context)
            layout_template = self.env.get_template(LAYOUT_PREFIX + layout)
            markup = layout_template.render(**context)
        except TemplateNotFound as e:
            missing = e.name or str(e)
            if missing.startswith(LAYOUT_PREFIX):
                raise UnresolvedReferenceError(
                    "layout", missing[len(LAYOUT_PREFIX):], page
                ) from e
            raise UnresolvedReferenceError("partial", missing, page) from e
        except TemplateSyntaxError as e:
            where = e.name or page
            raise PageCompileError(page, f"{where}:{e.lineno}: {e.message}") from e
        except TemplateError as e:
            raise PageCompileError(page, str(e)) from e

        for transform in self.transforms:
            markup = transform(markup)

        return CompiledDocument(source=page, path=output_path(page), markup=markup)

    def compile_all(self) -> CompileReport:
        """Compile every eligible page; page errors never stop siblings."""
        report = CompileReport()
        for page in self.pages():
            report.processed.append(page)
            try:
                report.documents.append(self.compile_page(page))
            except PageCompileError as e:
                log.error(f"Page error: {e}")
                report.errors.append(e)
        return report
