"""Tests for the CSS statement parser and selector helpers."""

import pytest

from mailforge.css import (
    AtRule,
    Declaration,
    StyleRule,
    is_dynamic,
    parse_declarations,
    parse_stylesheet,
    serialize,
    specificity,
    split_top_level,
    strip_dynamic,
)
from mailforge.exceptions import StylesheetSyntaxError


class TestParseStylesheet:
    def test_rules_and_media(self):
        statements = parse_stylesheet(
            "body { color: red }\n@media (max-width:480px){.a{color:blue}}"
        )
        assert isinstance(statements[0], StyleRule)
        assert statements[0].selector == "body"
        media = statements[1]
        assert isinstance(media, AtRule)
        assert media.keyword == "media"
        assert media.prelude == "(max-width:480px)"
        assert media.css() == "@media (max-width:480px){.a{color:blue}}"

    def test_statement_at_rules(self):
        statements = parse_stylesheet('@charset "utf-8";\n@import "x";\na{b:c}')
        assert [s.css() for s in statements] == ['@charset "utf-8";', '@import "x";', "a{b:c}"]

    def test_media_without_space(self):
        (media,) = parse_stylesheet("@media(max-width:10px){a{b:c}}")
        assert media.keyword == "media"
        assert media.prelude == "(max-width:10px)"

    def test_comments_ignored(self):
        statements = parse_stylesheet("/* head */ a { color: red } /* { */")
        assert len(statements) == 1
        assert statements[0].selector == "a"

    def test_strings_may_hold_braces(self):
        (rule,) = parse_stylesheet('a::after { content: "}" }')
        assert rule.declarations == [Declaration("content", '"}"')]

    def test_line_numbers(self):
        statements = parse_stylesheet("a{}\n\n.b{}\n")
        assert [s.line for s in statements] == [1, 3]

    def test_unclosed_brace(self):
        with pytest.raises(StylesheetSyntaxError) as exc:
            parse_stylesheet("a{}\nb { color: red", "app.scss")
        assert exc.value.line == 2
        assert exc.value.path == "app.scss"

    def test_unexpected_close(self):
        with pytest.raises(StylesheetSyntaxError) as exc:
            parse_stylesheet("a{}\n}")
        assert exc.value.line == 2

    def test_unterminated_comment(self):
        with pytest.raises(StylesheetSyntaxError):
            parse_stylesheet("a{} /* never closed")

    def test_declaration_outside_rule(self):
        with pytest.raises(StylesheetSyntaxError):
            parse_stylesheet("color: red;")

    def test_serialize(self):
        css = "a , b { color : red ; margin:0 }"
        assert serialize(parse_stylesheet(css)) == "a,b{color:red;margin:0}"


class TestDeclarations:
    def test_important(self):
        assert parse_declarations("color: red !important; margin:0") == [
            Declaration("color", "red", True),
            Declaration("margin", "0"),
        ]

    def test_malformed_entries_skipped(self):
        assert parse_declarations("color; :red; width: 1px") == [Declaration("width", "1px")]

    def test_values_with_separators(self):
        (decl,) = parse_declarations("background: url(data:image/png;base64,AA==)")
        assert decl.value == "url(data:image/png;base64,AA==)"

    def test_split_top_level(self):
        assert split_top_level("a, b:not(.c, .d), e", ",") == ["a", "b:not(.c, .d)", "e"]


class TestSelectors:
    def test_specificity(self):
        assert specificity("#a .b p") == (1, 1, 1)
        assert specificity("a:hover") == (0, 1, 1)
        assert specificity("ul li::before") == (0, 0, 3)
        assert specificity("[type=text]") == (0, 1, 0)
        assert specificity("*") == (0, 0, 0)

    def test_is_dynamic(self):
        assert is_dynamic("a:hover")
        assert is_dynamic("p::before")
        assert is_dynamic("p:after")
        assert not is_dynamic("li:first-child")
        assert not is_dynamic(".a > p")

    def test_strip_dynamic(self):
        assert strip_dynamic("a:hover") == "a"
        assert strip_dynamic("li:first-child:hover") == "li:first-child"
        assert strip_dynamic("a > :hover") == "a > *"
        assert strip_dynamic(":focus") == "*"
