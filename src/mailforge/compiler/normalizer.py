"""Markup normalizer - expands layout shorthand into table markup.

Email clients have poor CSS layout support, so structural shorthand
elements are rewritten into nested tables:

    <container>   table.container > tbody > tr > td
    <wrapper>     table.wrapper > tbody > tr > td.wrapper-inner
    <row>         table.row > tbody > tr
    <columns>     th.columns > table > tbody > tr > th (+ th.expander)
    <button>      table.button > ... > td > table > ... > td > a
    <spacer>      table.spacer > tbody > tr > td[height]
    <callout>     table.callout > tbody > tr > th.callout-inner
    <h-line>      table.h-line > tbody > tr > th
    <menu>/<item> table.menu ... th.menu-item > a
    <block-grid>  table.block-grid.up-N > tbody > tr
    <center>      children get align=center and .float-center

The transform is total: unknown tags pass through untouched and malformed
shorthand becomes a best-effort structure instead of an error.
"""

from __future__ import annotations

import logging

from bs4 import BeautifulSoup
from bs4.element import Tag

log = logging.getLogger(__name__)

COLUMN_COUNT = 12

SHORTHAND = (
    "container",
    "wrapper",
    "row",
    "columns",
    "column",
    "button",
    "spacer",
    "callout",
    "h-line",
    "menu",
    "item",
    "block-grid",
    "center",
)

# attributes consumed by the expansion rather than copied to the output
CONSUMED = {"class", "small", "large", "size", "size-sm", "size-lg", "href", "target", "up"}


def _int_attr(tag: Tag, name: str, default: int) -> int:
    value = tag.get(name)
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _classes(tag: Tag, *extra: str) -> list[str]:
    existing = tag.get("class") or []
    if isinstance(existing, str):
        existing = existing.split()
    return [*extra, *existing]


def _passthrough(tag: Tag) -> dict[str, str]:
    return {k: v for k, v in tag.attrs.items() if k not in CONSUMED}


class Normalizer:
    """Rewrites shorthand layout elements into renderer-safe tables."""

    def __init__(self, column_count: int = COLUMN_COUNT):
        self.column_count = column_count

    def __call__(self, markup: str) -> str:
        return self.normalize(markup)

    def normalize(self, markup: str) -> str:
        if not any(f"<{name}" in markup for name in SHORTHAND):
            return markup

        soup = BeautifulSoup(markup, "html.parser")
        targets = soup.find_all(list(SHORTHAND))
        positions = self._column_positions(targets)

        # document order: a parent is expanded before its children, and the
        # children are moved (not copied) so the collected references stay valid
        for tag in targets:
            self._expand(soup, tag, positions)

        return soup.decode(formatter="html")

    def _column_positions(self, targets: list[Tag]) -> dict[int, tuple[int, int]]:
        """Index and sibling count of every column among its column siblings."""
        positions: dict[int, tuple[int, int]] = {}
        seen: set[int] = set()
        for tag in targets:
            if tag.name not in ("columns", "column") or id(tag) in seen:
                continue
            parent = tag.parent
            siblings = [
                child
                for child in (parent.children if parent is not None else [tag])
                if isinstance(child, Tag) and child.name in ("columns", "column")
            ]
            for index, sibling in enumerate(siblings):
                positions[id(sibling)] = (index, len(siblings))
                seen.add(id(sibling))
        return positions

    def _expand(self, soup: BeautifulSoup, tag: Tag, positions: dict[int, tuple[int, int]]) -> None:
        handler = {
            "container": self._container,
            "wrapper": self._wrapper,
            "row": self._row,
            "columns": self._column,
            "column": self._column,
            "button": self._button,
            "spacer": self._spacer,
            "callout": self._callout,
            "h-line": self._h_line,
            "menu": self._menu,
            "item": self._item,
            "block-grid": self._block_grid,
            "center": self._center,
        }[tag.name]

        if tag.name in ("columns", "column"):
            handler(soup, tag, positions.get(id(tag), (0, 1)))
        else:
            handler(soup, tag)

    # -- helpers ------------------------------------------------------------

    def _table(self, soup: BeautifulSoup, attrs: dict, classes: list[str]) -> tuple[Tag, Tag]:
        """Build table > tbody > tr and return (table, tr)."""
        table = soup.new_tag("table", attrs=attrs)
        if classes:
            table["class"] = classes
        tbody = soup.new_tag("tbody")
        tr = soup.new_tag("tr")
        tbody.append(tr)
        table.append(tbody)
        return table, tr

    def _move_children(self, source: Tag, target: Tag) -> None:
        for child in list(source.contents):
            target.append(child.extract())

    # -- components -----------------------------------------------------------

    def _container(self, soup: BeautifulSoup, tag: Tag) -> None:
        attrs = {"align": "center", **_passthrough(tag)}
        table, tr = self._table(soup, attrs, _classes(tag, "container"))
        td = soup.new_tag("td")
        tr.append(td)
        self._move_children(tag, td)
        tag.replace_with(table)

    def _wrapper(self, soup: BeautifulSoup, tag: Tag) -> None:
        attrs = {"align": "center", **_passthrough(tag)}
        table, tr = self._table(soup, attrs, _classes(tag, "wrapper"))
        td = soup.new_tag("td", attrs={"class": "wrapper-inner"})
        tr.append(td)
        self._move_children(tag, td)
        tag.replace_with(table)

    def _row(self, soup: BeautifulSoup, tag: Tag) -> None:
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "row"))
        self._move_children(tag, tr)
        tag.replace_with(table)

    def _column(self, soup: BeautifulSoup, tag: Tag, position: tuple[int, int]) -> None:
        index, count = position
        default_large = max(1, self.column_count // max(1, count))
        large = _int_attr(tag, "large", default_large)
        small = _int_attr(tag, "small", self.column_count)

        classes = [f"small-{small}", f"large-{large}", "columns"]
        if index == 0:
            classes.append("first")
        if index == count - 1:
            classes.append("last")

        th = soup.new_tag("th", attrs=_passthrough(tag))
        th["class"] = classes + _classes(tag)
        inner, tr = self._table(soup, {}, [])
        cell = soup.new_tag("th")
        tr.append(cell)
        self._move_children(tag, cell)

        # full-width columns need an expander cell, unless they hold a nested row
        has_row = any(
            isinstance(child, Tag)
            and (child.name == "row" or (child.name == "table" and "row" in _classes(child)))
            for child in cell.contents
        )
        if large == self.column_count and not has_row:
            tr.append(soup.new_tag("th", attrs={"class": "expander"}))

        th.append(inner)
        tag.replace_with(th)

    def _button(self, soup: BeautifulSoup, tag: Tag) -> None:
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "button"))
        td = soup.new_tag("td")
        tr.append(td)
        inner, inner_tr = self._table(soup, {}, [])
        inner_td = soup.new_tag("td")
        inner_tr.append(inner_td)
        td.append(inner)

        href = tag.get("href")
        if href is not None:
            link = soup.new_tag("a", attrs={"href": href})
            if tag.get("target"):
                link["target"] = tag["target"]
            self._move_children(tag, link)
            inner_td.append(link)
        else:
            self._move_children(tag, inner_td)

        tag.replace_with(table)

    def _spacer(self, soup: BeautifulSoup, tag: Tag) -> None:
        size = _int_attr(tag, "size", 16)
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "spacer"))
        td = soup.new_tag(
            "td",
            attrs={
                "height": str(size),
                "style": f"font-size:{size}px;line-height:{size}px;",
            },
        )
        td.string = "\xa0"
        tr.append(td)
        # spacers are void in practice; stray content is kept after the table
        trailing = [child.extract() for child in list(tag.contents)]
        tag.replace_with(table)
        for child in reversed(trailing):
            table.insert_after(child)

    def _callout(self, soup: BeautifulSoup, tag: Tag) -> None:
        table, tr = self._table(soup, {}, ["callout"])
        th = soup.new_tag("th", attrs=_passthrough(tag))
        th["class"] = _classes(tag, "callout-inner")
        tr.append(th)
        tr.append(soup.new_tag("th", attrs={"class": "expander"}))
        self._move_children(tag, th)
        tag.replace_with(table)

    def _h_line(self, soup: BeautifulSoup, tag: Tag) -> None:
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "h-line"))
        th = soup.new_tag("th")
        th.string = "\xa0"
        tr.append(th)
        tag.replace_with(table)

    def _menu(self, soup: BeautifulSoup, tag: Tag) -> None:
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "menu"))
        td = soup.new_tag("td")
        tr.append(td)
        inner, inner_tr = self._table(soup, {}, [])
        td.append(inner)
        self._move_children(tag, inner_tr)
        tag.replace_with(table)

    def _item(self, soup: BeautifulSoup, tag: Tag) -> None:
        th = soup.new_tag("th", attrs=_passthrough(tag))
        th["class"] = _classes(tag, "menu-item")
        link = soup.new_tag("a", attrs={"href": tag.get("href", "")})
        if tag.get("target"):
            link["target"] = tag["target"]
        self._move_children(tag, link)
        th.append(link)
        tag.replace_with(th)

    def _block_grid(self, soup: BeautifulSoup, tag: Tag) -> None:
        up = _int_attr(tag, "up", 1)
        table, tr = self._table(soup, _passthrough(tag), _classes(tag, "block-grid", f"up-{up}"))
        self._move_children(tag, tr)
        tag.replace_with(table)

    def _center(self, soup: BeautifulSoup, tag: Tag) -> None:
        tag["data-parsed"] = ""
        for child in tag.children:
            if not isinstance(child, Tag):
                continue
            child["align"] = "center"
            child["class"] = _classes(child, "float-center")


def normalize(markup: str) -> str:
    """Normalize markup with the default column count."""
    return Normalizer().normalize(markup)
