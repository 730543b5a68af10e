"""Inliner - merges stylesheet rules into style attributes.

Per document, in order:

1. inline: every top-level style rule is merged into the ``style`` attribute
   of each matching element. Precedence is (!important, specificity, source
   order); the element's own inline declarations beat any non-important
   stylesheet declaration.
2. embed: media-query blocks replace the ``<!-- <style> -->`` placeholder as
   a single ``<style>`` element. Without a placeholder nothing is injected.
3. unlink: ``<link rel="stylesheet">`` elements pointing at the bundle are
   removed.
4. minify: insignificant whitespace is collapsed and pre-existing embedded
   CSS is compressed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

import csscompressor
import soupsieve
from bs4 import BeautifulSoup
from bs4.element import Comment, NavigableString, PreformattedString, Tag

from mailforge.css import Declaration, is_dynamic, parse_declarations, specificity
from mailforge.styles import NON_VISUAL, CompiledStylesheet, fragment_roots

log = logging.getLogger(__name__)

PLACEHOLDER = "<style>"

# (important, inline, specificity, order)
Priority = tuple[bool, bool, tuple[int, int, int], int]

PRESERVE_WHITESPACE = {"pre", "textarea", "script", "style"}
INLINE_ELEMENTS = {
    "a", "abbr", "b", "big", "br", "cite", "code", "em", "font", "i", "img",
    "kbd", "label", "q", "s", "small", "span", "strike", "strong", "sub",
    "sup", "u", "var",
}

WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class _Candidate:
    priority: Priority
    declaration: Declaration


def format_style(declarations: Iterable[Declaration]) -> str:
    return ";".join(f"{d.name}:{d.value}" for d in declarations)


class Inliner:
    """Applies a compiled stylesheet to documents.

    Args:
        stylesheet: The compiled stylesheet.
        stylesheet_href: href of the bundle's ``<link>`` (e.g. css/app.css).
    """

    def __init__(self, stylesheet: CompiledStylesheet, stylesheet_href: str = "css/app.css"):
        self.stylesheet = stylesheet
        self.stylesheet_href = stylesheet_href
        self.media_css = "".join(stylesheet.media_blocks)

    def __call__(self, markup: str) -> str:
        return self.inline(markup)

    def inline(self, markup: str) -> str:
        soup = BeautifulSoup(markup, "html.parser")
        self.apply_rules(soup)
        self.embed_media(soup)
        self.remove_links(soup)
        self.minify(soup)
        return soup.decode(formatter="html")

    # -- 1. inline ------------------------------------------------------------

    def apply_rules(self, soup: BeautifulSoup) -> None:
        candidates: dict[int, list[_Candidate]] = {}
        elements: dict[int, Tag] = {}
        fragment = soup.find("body") is None
        order = 0

        for rule in self.stylesheet.inlineable:
            declarations = rule.declarations
            for selector in rule.selectors:
                order += 1
                if is_dynamic(selector):
                    continue
                matched = self._select(soup, selector, fragment)
                if not matched:
                    continue
                weight = specificity(selector)
                for element in matched:
                    elements[id(element)] = element
                    bucket = candidates.setdefault(id(element), [])
                    for declaration in declarations:
                        bucket.append(
                            _Candidate((declaration.important, False, weight, order), declaration)
                        )

        for key, element in elements.items():
            existing = parse_declarations(str(element.get("style", "")))
            bucket = candidates[key]
            for position, declaration in enumerate(existing):
                bucket.append(
                    _Candidate((declaration.important, True, (0, 0, 0), position), declaration)
                )

            winners: dict[str, _Candidate] = {}
            for candidate in bucket:
                name = candidate.declaration.name
                current = winners.get(name)
                if current is None or candidate.priority >= current.priority:
                    winners[name] = candidate

            ordered = sorted(winners.values(), key=lambda c: c.priority)
            element["style"] = format_style(c.declaration for c in ordered)

    def _select(self, soup: BeautifulSoup, selector: str, fragment: bool) -> list[Tag]:
        try:
            matched = soup.select(selector)
        except (soupsieve.SelectorSyntaxError, NotImplementedError, ValueError):
            log.debug(f"Skipping unsupported selector {selector}")
            return []

        if fragment and selector.strip().lower() == "body":
            matched = fragment_roots(soup) or []
        return [element for element in matched if element.name not in NON_VISUAL]

    # -- 2. embed -------------------------------------------------------------

    def embed_media(self, soup: BeautifulSoup) -> None:
        placeholders = [
            node
            for node in soup.find_all(string=lambda s: isinstance(s, Comment))
            if node.strip() == PLACEHOLDER
        ]
        if not placeholders:
            return

        first, rest = placeholders[0], placeholders[1:]
        if self.media_css:
            style = soup.new_tag("style")
            style.string = self.media_css
            first.replace_with(style)
        else:
            first.extract()
        for node in rest:
            node.extract()

    # -- 3. unlink ------------------------------------------------------------

    def remove_links(self, soup: BeautifulSoup) -> None:
        target = self.stylesheet_href.lstrip("./")
        for link in soup.find_all("link"):
            rel = link.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            href = str(link.get("href", ""))
            if "stylesheet" in [r.lower() for r in rel] and href.endswith(target):
                link.decompose()

    # -- 4. minify ------------------------------------------------------------

    def minify(self, soup: BeautifulSoup) -> None:
        for style in soup.find_all("style"):
            text = style.string
            if text is None or text == self.media_css:
                continue
            style.string = csscompressor.compress(str(text))

        for node in list(soup.find_all(string=True)):
            if isinstance(node, PreformattedString) or not isinstance(node, NavigableString):
                continue
            parent = node.parent
            if parent is None or parent.name in PRESERVE_WHITESPACE:
                continue
            if any(p.name in PRESERVE_WHITESPACE for p in node.parents if p is not None):
                continue

            text = str(node)
            collapsed = WHITESPACE.sub(" ", text)
            if collapsed.strip():
                if collapsed != text:
                    node.replace_with(collapsed)
                continue

            # whitespace-only: significant only between inline elements
            prev_tag = node.previous_sibling
            next_tag = node.next_sibling
            if (
                parent.name in INLINE_ELEMENTS
                or (isinstance(prev_tag, Tag) and prev_tag.name in INLINE_ELEMENTS
                    and isinstance(next_tag, Tag) and next_tag.name in INLINE_ELEMENTS)
            ):
                node.replace_with(" ")
            else:
                node.extract()
