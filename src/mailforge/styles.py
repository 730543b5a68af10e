"""Style preprocessor - resolves a stylesheet tree into one CSS blob.

Import resolution follows the Sass partial conventions: ``@import "grid"``
looks for ``grid``, ``_grid``, ``grid.scss``, ``_grid.scss``, ``grid.css``
and ``_grid.css`` in the importing file's directory, then the project's
style directory, then each shared library directory. Remote imports
(``url(...)``, ``http(s)://``) are left in place.

Syntax errors anywhere in the tree are fatal for the whole build.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

import soupsieve
from bs4 import BeautifulSoup
from bs4.element import Tag

from mailforge.css import (
    AtRule,
    Statement,
    StyleRule,
    parse_stylesheet,
    serialize,
    split_top_level,
    strip_dynamic,
)
from mailforge.exceptions import StylesheetSyntaxError

log = logging.getLogger(__name__)

EXTENSIONS = ("", ".scss", ".css")
NON_VISUAL = {"head", "link", "meta", "script", "style", "title"}


@dataclass
class CompiledStylesheet:
    """Compiled CSS plus the blocks that cannot be inlined."""

    statements: list[Statement] = field(default_factory=list)

    @property
    def css(self) -> str:
        return serialize(self.statements)

    @property
    def pretty(self) -> str:
        """One statement per line, for development builds."""
        return "".join(s.css() + "\n" for s in self.statements)

    @property
    def inlineable(self) -> list[StyleRule]:
        return [s for s in self.statements if isinstance(s, StyleRule)]

    @property
    def media_blocks(self) -> list[str]:
        """Media-query blocks in source order, declarations untouched."""
        return [
            s.css()
            for s in self.statements
            if isinstance(s, AtRule) and s.keyword.lower() == "media" and s.block is not None
        ]


def strip_line_comments(text: str) -> str:
    """Remove ``//`` comments outside strings, block comments and url()."""
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in "\"'":
            j = i + 1
            while j < n and text[j] != ch and text[j] != "\n":
                j += 2 if text[j] == "\\" else 1
            out.append(text[i : j + 1])
            i = j + 1
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(text[i:end])
            i = end
        elif text.startswith("url(", i):
            end = text.find(")", i)
            end = n if end == -1 else end + 1
            out.append(text[i:end])
            i = end
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _unquote(target: str) -> str:
    target = target.strip()
    if len(target) >= 2 and target[0] == target[-1] and target[0] in "\"'":
        return target[1:-1]
    return target


def _is_remote(target: str) -> bool:
    bare = _unquote(target)
    return (
        target.startswith("url(")
        or bare.startswith(("http://", "https://", "//"))
        or " " in target.strip()  # media-qualified: @import "x.css" screen
    )


class StylePreprocessor:
    """Expands a stylesheet entry point into a single statement list.

    Args:
        style_dir: The project's own style directory.
        library_dirs: Shared stylesheet directories searched after it.
        reader: Returns a file's text; defaults to reading from disk.
    """

    def __init__(
        self,
        style_dir: Path,
        library_dirs: Iterable[Path] = (),
        reader: Callable[[Path], str] | None = None,
    ):
        self.style_dir = style_dir
        self.library_dirs = list(library_dirs)
        self.reader = reader or (lambda p: p.read_text(encoding="utf-8"))
        self.included: list[Path] = []

    def compile(self, entry: str | Path) -> CompiledStylesheet:
        """Compile an entry point (relative to the style directory).

        Raises:
            StylesheetSyntaxError: On any syntax error, missing or
                circular import.
        """
        path = Path(entry)
        if not path.is_absolute():
            path = self.style_dir / path
        if not self._exists(path):
            raise StylesheetSyntaxError(str(path), 0, "stylesheet entry point not found")

        path = path.resolve()
        self.included = [path]
        statements = self._expand(path, [path])
        log.debug(f"Compiled {path.name} from {len(self.included)} file(s)")
        return CompiledStylesheet(statements)

    def _exists(self, path: Path) -> bool:
        return path.is_file()

    def _expand(self, path: Path, stack: list[Path]) -> list[Statement]:
        try:
            text = self.reader(path)
        except OSError as e:
            raise StylesheetSyntaxError(str(path), 0, f"cannot read: {e.strerror}") from e

        statements = parse_stylesheet(strip_line_comments(text), str(path))
        out: list[Statement] = []

        for statement in statements:
            if not (
                isinstance(statement, AtRule)
                and statement.keyword.lower() == "import"
                and statement.block is None
            ):
                out.append(statement)
                continue

            for target in split_top_level(statement.prelude, ","):
                if _is_remote(target):
                    out.append(AtRule("import", target, None, statement.line))
                    continue

                resolved = self.resolve(_unquote(target), path.parent)
                if resolved is None:
                    raise StylesheetSyntaxError(
                        str(path), statement.line, f"cannot find import '{_unquote(target)}'"
                    )
                if resolved in stack:
                    raise StylesheetSyntaxError(
                        str(path), statement.line, f"circular import of '{resolved.name}'"
                    )
                if resolved in self.included:
                    continue
                self.included.append(resolved)
                out.extend(self._expand(resolved, stack + [resolved]))

        return out

    def resolve(self, name: str, current_dir: Path) -> Path | None:
        """Find an import target on the search path."""
        relative = Path(name)
        candidates: list[Path] = []
        for base in (current_dir, self.style_dir, *self.library_dirs):
            for stem in (relative.name, f"_{relative.name}"):
                for ext in EXTENSIONS:
                    if ext and relative.suffix in (".scss", ".css"):
                        continue
                    candidates.append(base / relative.parent / f"{stem}{ext}")

        for candidate in candidates:
            if self._exists(candidate):
                return candidate.resolve()
        return None


def fragment_roots(soup: BeautifulSoup) -> list[Tag] | None:
    """Top-level elements standing in for <body> in a fragment document.

    Returns None when the document has a real <body>.
    """
    if soup.find("body") is not None:
        return None
    return [c for c in soup.children if isinstance(c, Tag) and c.name not in NON_VISUAL]


class DeadRuleFilter:
    """Removes selectors that match no element of the compiled documents.

    Dynamic pseudo-classes and pseudo-elements are ignored when matching
    (``a:hover`` is kept if any ``a`` exists); selectors that cannot be
    evaluated are always kept. In fragment documents ``body`` matches the
    top-level elements, as it does when inlining.
    """

    def __init__(self, documents: Iterable[str]):
        self.soups = [BeautifulSoup(markup, "html.parser") for markup in documents]
        self._seen: dict[str, bool] = {}

    def matches(self, selector: str) -> bool:
        if selector not in self._seen:
            plain = strip_dynamic(selector)
            try:
                self._seen[selector] = any(self._used(soup, plain) for soup in self.soups)
            except (soupsieve.SelectorSyntaxError, NotImplementedError, ValueError):
                self._seen[selector] = True
        return self._seen[selector]

    @staticmethod
    def _used(soup: BeautifulSoup, selector: str) -> bool:
        if selector.strip().lower() == "body":
            roots = fragment_roots(soup)
            if roots is not None:
                return bool(roots)
        return soup.select_one(selector) is not None

    def filter(self, statements: list[Statement]) -> list[Statement]:
        kept: list[Statement] = []
        for statement in statements:
            if isinstance(statement, StyleRule):
                selectors = [s for s in statement.selectors if self.matches(s)]
                if not selectors:
                    log.debug(f"Dropping unused rule {statement.selector}")
                    continue
                kept.append(StyleRule(",".join(selectors), statement.body, statement.line))
            elif statement.nesting:
                rules = self.filter(statement.rules)
                if not rules:
                    continue
                kept.append(
                    AtRule(statement.keyword, statement.prelude, statement.block, statement.line, rules)
                )
            else:
                kept.append(statement)
        return kept


def eliminate_dead_rules(
    stylesheet: CompiledStylesheet, documents: Iterable[str]
) -> CompiledStylesheet:
    """Production pass: keep only rules used by at least one document."""
    return CompiledStylesheet(DeadRuleFilter(documents).filter(stylesheet.statements))
