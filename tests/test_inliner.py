"""Tests for the CSS inliner."""

from mailforge.css import parse_stylesheet
from mailforge.inliner import Inliner
from mailforge.styles import CompiledStylesheet

LINK = '<link rel="stylesheet" type="text/css" href="css/app.css">'


def inliner(css, href="css/app.css"):
    return Inliner(CompiledStylesheet(parse_stylesheet(css)), href)


class TestInliner:
    def test_fragment_scenario(self):
        css = "body{color:red} @media (max-width:480px){.a{color:blue}}"
        document = f'<!-- <style> -->{LINK}<div class="a">hi</div>'

        output = inliner(css).inline(document)

        assert '<div class="a" style="color:red">hi</div>' in output
        assert "<style>@media (max-width:480px){.a{color:blue}}</style>" in output
        assert "<link" not in output
        assert "<!--" not in output

    def test_full_document(self):
        css = "body{color:red}.lead{font-size:20px}@media (max-width:480px){.lead{font-size:16px}}"
        document = (
            "<html><head>" + LINK + "<!-- <style> --></head>"
            '<body><p class="lead">Hi</p></body></html>'
        )
        output = inliner(css).inline(document)
        assert '<body style="color:red">' in output
        assert '<p class="lead" style="font-size:20px">Hi</p>' in output
        assert "<head><style>@media (max-width:480px){.lead{font-size:16px}}</style></head>" in output

    def test_is_idempotent(self):
        css = "body{color:red} p{margin:0 !important} @media (max-width:480px){.a{color:blue}}"
        document = (
            f'<html><head>{LINK}<!-- <style> --></head>\n'
            '<body>\n  <p class="a" style="color: green">hi  there</p>\n</body></html>'
        )
        once = inliner(css).inline(document)
        assert inliner(css).inline(once) == once

    def test_inline_style_beats_stylesheet(self):
        output = inliner(".x{color:red;margin:0}").inline('<p class="x" style="color:green">t</p>')
        assert 'style="margin:0;color:green"' in output

    def test_important_beats_inline_style(self):
        output = inliner(".x{color:red !important}").inline('<p class="x" style="color:green">t</p>')
        assert 'style="color:red"' in output

    def test_specificity_and_source_order(self):
        css = "#main{color:blue} p{color:red} p{margin:0} p{margin:1px}"
        output = inliner(css).inline('<p id="main">t</p>')
        assert 'style="margin:1px;color:blue"' in output

    def test_dynamic_selectors_not_inlined(self):
        output = inliner("a:hover{color:red} p::before{content:'x'}").inline('<p><a href="#">x</a></p>')
        assert "style=" not in output

    def test_no_placeholder_injects_nothing(self):
        output = inliner("@media print{p{color:red}}").inline("<p>x</p>")
        assert "<style" not in output

    def test_placeholder_without_media_removed(self):
        output = inliner("p{color:red}").inline("<!-- <style> --><p>x</p>")
        assert output == '<p style="color:red">x</p>'

    def test_other_links_kept(self):
        other = '<link rel="stylesheet" href="https://fonts.test/f.css">'
        output = inliner("").inline(other + LINK)
        assert "fonts.test" in output
        assert "css/app.css" not in output

    def test_whitespace_collapsed(self):
        output = inliner("").inline("<div>\n  <p>a   b</p>\n  <p><b>x</b> <i>y</i></p>\n</div>")
        assert output == "<div><p>a b</p><p><b>x</b> <i>y</i></p></div>"

    def test_pre_preserved(self):
        document = "<div><pre>  keep\n   this</pre></div>"
        assert inliner("").inline(document) == document

    def test_existing_style_block_minified(self):
        output = inliner("").inline("<style>\n  .a { color: red; }\n</style><p>x</p>")
        assert "<style>.a{color:red}</style>" in output

    def test_child_combinator_not_escaped(self):
        output = inliner("@media print{.a > p{color:red}}").inline("<!-- <style> --><p>x</p>")
        assert "<style>@media print{.a > p{color:red}}</style>" in output
