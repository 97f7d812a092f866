from __future__ import annotations

import pytest

from services.markup import Dialect, from_neutral, parse_dialect, to_neutral, translate

PLATFORM_SAMPLES = {
    Dialect.WHATSAPP: (
        "*bold* and _it_ and ~under~\n"
        "`a<b`\n"
        "```py\nprint('*x*')```\n"
        "> first\n> second\n"
        "see https://example.com"
    ),
    Dialect.MARKDOWN: (
        "**bold** and _it_ and __under__\n"
        "`code`\n"
        "```\nplain block```\n"
        "```\nhello\nworld```\n"
        "> quoted"
    ),
}

NEUTRAL_SAMPLE = (
    '<b>bold</b> <i>it</i> <u>u</u> <code>c</code>\n'
    '<pre><code class="language-js">let a = 1;</code></pre>\n'
    '<blockquote>q1\nq2</blockquote>\n'
    '<pre>hello\nworld</pre>'
)


def test_html_bold_becomes_whatsapp_emphasis() -> None:
    assert from_neutral("<b>hi</b>", Dialect.WHATSAPP) == "*hi*"


def test_markdown_dialect_uses_double_markers() -> None:
    assert from_neutral("<b>a</b> <i>b</i> <u>c</u>", Dialect.MARKDOWN) == "**a** _b_ __c__"
    assert to_neutral("**a** _b_ __c__", Dialect.MARKDOWN) == "<b>a</b> <i>b</i> <u>c</u>"


def test_code_block_with_language_tag() -> None:
    html = '<pre><code class="language-python">x = a*b*c &lt; 2</code></pre>'
    assert from_neutral(html, Dialect.WHATSAPP) == "```python\nx = a*b*c < 2```"


def test_emphasis_inside_code_is_left_alone() -> None:
    assert to_neutral("```py\nx = *y*```", Dialect.WHATSAPP) == '<pre><code class="language-py">x = *y*</code></pre>'
    assert to_neutral("`_name_` and _it_", Dialect.WHATSAPP) == "<code>_name_</code> and <i>it</i>"


def test_angle_brackets_are_escaped_into_html_and_restored_out_of_it() -> None:
    assert to_neutral("a < b *c*", Dialect.WHATSAPP) == "a &lt; b <b>c</b>"
    assert from_neutral("&lt;b&gt; is a tag", Dialect.WHATSAPP) == "<b> is a tag"


def test_blockquote_prefixes_every_line() -> None:
    assert from_neutral("<blockquote>one\ntwo\nthree</blockquote>", Dialect.WHATSAPP) == "> one\n> two\n> three"
    assert to_neutral("> one\n> two\nafter", Dialect.WHATSAPP) == "<blockquote>one\ntwo</blockquote>\nafter"


def test_link_is_unwrapped_to_bare_url() -> None:
    assert from_neutral('see <a href="https://x.io/p">here</a>', Dialect.WHATSAPP) == "see https://x.io/p"


def test_unbalanced_markers_pass_through() -> None:
    assert to_neutral("*unclosed and _half", Dialect.WHATSAPP) == "*unclosed and _half"
    assert to_neutral("snake_case_name", Dialect.WHATSAPP) == "snake_case_name"


def test_html_dialect_is_identity() -> None:
    assert to_neutral("<b>x</b>", Dialect.HTML) == "<b>x</b>"
    assert from_neutral("<b>x</b>", Dialect.HTML) == "<b>x</b>"


@pytest.mark.parametrize("dialect", list(PLATFORM_SAMPLES))
def test_platform_text_survives_round_trip(dialect: Dialect) -> None:
    text = PLATFORM_SAMPLES[dialect]
    assert from_neutral(to_neutral(text, dialect), dialect) == text


@pytest.mark.parametrize("dialect", [Dialect.WHATSAPP, Dialect.MARKDOWN])
def test_neutral_markup_survives_round_trip(dialect: Dialect) -> None:
    assert to_neutral(from_neutral(NEUTRAL_SAMPLE, dialect), dialect) == NEUTRAL_SAMPLE


def test_translate_between_dialects() -> None:
    assert translate("<b>hi</b>", "HTML", Dialect.WHATSAPP) == ("*hi*", True)
    assert translate("**x**", "Markdown", Dialect.WHATSAPP) == ("*x*", True)
    assert translate("<b>x</b>", "html", Dialect.HTML) == ("<b>x</b>", True)


def test_translate_without_format_leaves_plain_text() -> None:
    assert translate("plain *x*", None, Dialect.WHATSAPP) == ("plain *x*", False)
    assert translate("plain", "bbcode", Dialect.HTML) == ("plain", False)


def test_parse_dialect_aliases() -> None:
    assert parse_dialect("HTML") is Dialect.HTML
    assert parse_dialect("markdownV2") is Dialect.MARKDOWN
    assert parse_dialect(" whatsapp ") is Dialect.WHATSAPP
    assert parse_dialect("bbcode") is None
    assert parse_dialect(None) is None


@pytest.mark.parametrize("dialect", [Dialect.WHATSAPP, Dialect.MARKDOWN])
def test_plain_block_first_line_is_not_a_language_tag(dialect: Dialect) -> None:
    assert from_neutral("<pre>hello\nworld</pre>", dialect) == "```\nhello\nworld```"
    assert from_neutral("<pre>one line</pre>", dialect) == "```one line```"
    assert to_neutral("```\nhello\nworld```", dialect) == "<pre>hello\nworld</pre>"
    assert to_neutral("```hello\nworld```", dialect) == '<pre><code class="language-hello">world</code></pre>'


def test_whatsapp_emphasis_needs_word_boundaries_and_one_line() -> None:
    # WhatsApp itself does not render these, so they stay literal
    assert from_neutral("<b>a</b>b", Dialect.WHATSAPP) == "*a*b"
    assert to_neutral("*a*b", Dialect.WHATSAPP) == "*a*b"
    assert to_neutral("*multi\nline*", Dialect.WHATSAPP) == "*multi\nline*"
