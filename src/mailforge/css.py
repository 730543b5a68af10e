"""CSS statement model shared by the style preprocessor and the inliner.

Only the structure the build needs is parsed: top-level statements (style
rules and at-rules), declaration lists and selector lists. Values and
selectors are kept as text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from mailforge.exceptions import StylesheetSyntaxError

# at-rules whose block holds further rules rather than declarations
NESTING_AT_RULES = {"media", "supports", "document", "-moz-document"}

WHITESPACE = re.compile(r"\s+")

# pseudo-classes and pseudo-elements that depend on interaction or render
# state; they can neither be inlined nor matched against static markup
DYNAMIC_PSEUDO = re.compile(
    r"::?[a-zA-Z-]+(?:\([^)]*\))?",
)
STATIC_PSEUDO_CLASSES = {
    "first-child",
    "last-child",
    "only-child",
    "first-of-type",
    "last-of-type",
    "only-of-type",
    "nth-child",
    "nth-last-child",
    "nth-of-type",
    "nth-last-of-type",
    "not",
    "is",
    "where",
    "empty",
    "root",
}
LEGACY_PSEUDO_ELEMENTS = {"before", "after", "first-line", "first-letter", "selection"}


@dataclass(frozen=True)
class Declaration:
    """One ``property: value`` pair."""

    name: str
    value: str
    important: bool = False

    def css(self) -> str:
        suffix = "!important" if self.important else ""
        return f"{self.name}:{self.value}{suffix}"


@dataclass
class StyleRule:
    """A selector list with its declaration block."""

    selector: str
    body: str
    line: int = 1

    @property
    def selectors(self) -> list[str]:
        return split_top_level(self.selector, ",")

    @property
    def declarations(self) -> list[Declaration]:
        return parse_declarations(self.body)

    def css(self) -> str:
        selector = ",".join(self.selectors)
        return selector + "{" + ";".join(d.css() for d in self.declarations) + "}"


@dataclass
class AtRule:
    """An at-rule, either a statement (``@import ...;``) or a block."""

    keyword: str
    prelude: str
    block: str | None = None
    line: int = 1
    rules: list[Statement] = field(default_factory=list)

    @property
    def nesting(self) -> bool:
        return self.keyword.lower() in NESTING_AT_RULES and self.block is not None

    def css(self) -> str:
        head = f"@{self.keyword}" + (f" {self.prelude}" if self.prelude else "")
        if self.block is None:
            return head + ";"
        if self.nesting:
            return head + "{" + "".join(rule.css() for rule in self.rules) + "}"
        return head + "{" + collapse(self.block) + "}"


Statement = Union[StyleRule, AtRule]


def collapse(text: str) -> str:
    return WHITESPACE.sub(" ", text).strip()


def _line_at(text: str, index: int, offset: int) -> int:
    return offset + text.count("\n", 0, index)


def _skip_string(text: str, i: int, path: str, line_offset: int) -> int:
    """Return the index just past the string literal starting at i."""
    quote = text[i]
    j = i + 1
    while j < len(text):
        ch = text[j]
        if ch == "\\":
            j += 2
            continue
        if ch == quote:
            return j + 1
        if ch == "\n":
            break
        j += 1
    raise StylesheetSyntaxError(path, _line_at(text, i, line_offset), "unterminated string")


def _skip_comment(text: str, i: int, path: str, line_offset: int) -> int:
    end = text.find("*/", i + 2)
    if end == -1:
        raise StylesheetSyntaxError(path, _line_at(text, i, line_offset), "unterminated comment")
    return end + 2


def strip_comments(text: str, path: str = "<css>") -> str:
    """Remove /* */ comments, leaving string literals alone."""
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "\"'":
            j = _skip_string(text, i, path, 1)
            out.append(text[i:j])
            i = j
        elif text.startswith("/*", i):
            j = _skip_comment(text, i, path, 1)
            # keep line count stable for error reporting
            out.append("\n" * text.count("\n", i, j))
            i = j
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def split_top_level(text: str, separator: str) -> list[str]:
    """Split on a separator outside parentheses, brackets and strings."""
    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch in "([":
            depth += 1
        elif ch in ")]":
            depth = max(0, depth - 1)
        elif ch == separator and depth == 0:
            parts.append(text[start:i])
            start = i + 1
        i += 1
    parts.append(text[start:])
    return [collapse(p) for p in parts if p.strip()]


def parse_declarations(body: str) -> list[Declaration]:
    """Parse a declaration block body. Malformed entries are skipped."""
    declarations: list[Declaration] = []
    for chunk in split_top_level(strip_comments(body), ";"):
        name, sep, value = chunk.partition(":")
        if not sep or not name.strip() or not value.strip():
            continue
        value = value.strip()
        important = False
        match = re.search(r"!\s*important\s*$", value, re.IGNORECASE)
        if match:
            important = True
            value = value[: match.start()].strip()
        declarations.append(Declaration(name.strip().lower(), collapse(value), important))
    return declarations


AT_RULE = re.compile(r"^@([\w-]+)\s*(.*)$", re.DOTALL)


def _at_rule(prelude: str, block: str | None, line: int) -> AtRule:
    match = AT_RULE.match(prelude)
    keyword, rest = (match.group(1), match.group(2)) if match else (prelude[1:], "")
    return AtRule(keyword, rest.strip(), block, line)


def parse_stylesheet(text: str, path: str = "<css>", line_offset: int = 1) -> list[Statement]:
    """Split CSS text into top-level statements.

    Raises:
        StylesheetSyntaxError: On unbalanced braces, unterminated strings
            or comments.
    """
    statements: list[Statement] = []
    i = 0
    start = 0
    prelude_line = line_offset
    started = False

    while i < len(text):
        ch = text[i]
        if not started and not ch.isspace():
            started = True
            prelude_line = _line_at(text, i, line_offset)

        if ch in "\"'":
            i = _skip_string(text, i, path, line_offset)
            continue
        if text.startswith("/*", i):
            end = _skip_comment(text, i, path, line_offset)
            # blank the comment out of the prelude, keeping newlines
            text = text[:i] + re.sub(r"[^\n]", " ", text[i:end]) + text[end:]
            if not text[start:end].strip():
                started = False
            i = end
            continue
        if ch == "}":
            raise StylesheetSyntaxError(path, _line_at(text, i, line_offset), "unexpected '}'")

        if ch == ";":
            prelude = collapse(text[start:i])
            if prelude.startswith("@"):
                statements.append(_at_rule(prelude, None, prelude_line))
            elif prelude:
                raise StylesheetSyntaxError(
                    path, prelude_line, f"declaration outside of a rule: '{prelude}'"
                )
            i += 1
            start = i
            started = False
            continue

        if ch == "{":
            close = _matching_brace(text, i, path, line_offset)
            prelude = collapse(text[start:i])
            block = text[i + 1 : close]
            if not prelude:
                raise StylesheetSyntaxError(path, prelude_line, "rule without a selector")
            if prelude.startswith("@"):
                at_rule = _at_rule(prelude, block, prelude_line)
                if at_rule.nesting:
                    at_rule.rules = parse_stylesheet(block, path, _line_at(text, i, line_offset))
                statements.append(at_rule)
            else:
                statements.append(StyleRule(prelude, block, prelude_line))
            i = close + 1
            start = i
            started = False
            continue

        i += 1

    trailing = collapse(text[start:])
    if trailing:
        raise StylesheetSyntaxError(path, prelude_line, f"unterminated statement: '{trailing}'")

    return statements


def _matching_brace(text: str, open_index: int, path: str, line_offset: int) -> int:
    depth = 0
    i = open_index
    while i < len(text):
        ch = text[i]
        if ch in "\"'":
            i = _skip_string(text, i, path, line_offset)
            continue
        if text.startswith("/*", i):
            i = _skip_comment(text, i, path, line_offset)
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise StylesheetSyntaxError(path, _line_at(text, open_index, line_offset), "unclosed '{'")


def serialize(statements: list[Statement]) -> str:
    """Compact CSS text for a list of statements."""
    return "".join(statement.css() for statement in statements)


def is_dynamic(selector: str) -> bool:
    """True if the selector uses pseudo-elements or state pseudo-classes."""
    for match in DYNAMIC_PSEUDO.finditer(_strip_strings(selector)):
        token = match.group(0)
        if token.startswith("::"):
            return True
        name = token[1:].split("(", 1)[0].lower()
        if name in LEGACY_PSEUDO_ELEMENTS or name not in STATIC_PSEUDO_CLASSES:
            return True
    return False


def strip_dynamic(selector: str) -> str:
    """Drop dynamic pseudo-classes/elements so the rest can be matched."""

    def replace(match: re.Match[str]) -> str:
        token = match.group(0)
        name = token.lstrip(":").split("(", 1)[0].lower()
        if token.startswith("::") or name in LEGACY_PSEUDO_ELEMENTS:
            return ""
        if name in STATIC_PSEUDO_CLASSES:
            return token
        return ""

    stripped = collapse(DYNAMIC_PSEUDO.sub(replace, selector))
    if not stripped or stripped[-1] in ">+~":
        stripped = (stripped + " *").strip()
    return stripped


def _strip_strings(selector: str) -> str:
    return re.sub(r"\"[^\"]*\"|'[^']*'", '""', selector)


def specificity(selector: str) -> tuple[int, int, int]:
    """Selector specificity as (ids, classes/attributes/pseudo-classes, types)."""
    s = _strip_strings(selector)
    # :where() contributes nothing; :not()/:is() contribute their argument
    s = re.sub(r":where\([^)]*\)", "", s)
    s = re.sub(r":(?:not|is|matches)\(([^)]*)\)", r" \1", s)

    ids = len(re.findall(r"#[\w-]+", s))
    s = re.sub(r"#[\w-]+", "", s)

    attrs = len(re.findall(r"\[[^\]]*\]", s))
    s = re.sub(r"\[[^\]]*\]", "", s)

    elements = len(re.findall(r"::[\w-]+", s))
    s = re.sub(r"::[\w-]+", "", s)
    legacy = r":(?:" + "|".join(LEGACY_PSEUDO_ELEMENTS) + r")\b"
    elements += len(re.findall(legacy, s))
    s = re.sub(legacy, "", s)

    pseudo = len(re.findall(r":[\w-]+(?:\([^)]*\))?", s))
    s = re.sub(r":[\w-]+(?:\([^)]*\))?", "", s)

    classes = len(re.findall(r"\.[\w-]+", s))
    s = re.sub(r"\.[\w-]+", "", s)

    elements += len([t for t in re.split(r"[\s>+~]+", s) if re.match(r"^[a-zA-Z][\w-]*$", t)])

    return ids, attrs + pseudo + classes, elements
