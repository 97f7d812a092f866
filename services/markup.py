# Rich-text markup translation between the neutral HTML subset used on the
# wire (extra.format == "HTML") and the markdown dialects platforms speak.
#
# Neutral tags: <b> <i> <u> <code> <pre> <pre><code class="language-x">
#               <blockquote> <a href="...">
#
# Every dialect is an ordered table of rules.  Rules flagged ``literal``
# produce code text: their output is parked behind a placeholder until all
# other rules have run, so emphasis markers inside code are never touched.

import html
import re
from enum import Enum
from typing import Callable, NamedTuple

import services.logger as log

l = log.get_logger()


class Dialect(str, Enum):
    WHATSAPP = "WhatsApp"   # *bold* _italic_ ~underline~
    MARKDOWN = "Markdown"   # **bold** _italic_ __underline__
    HTML = "HTML"           # the neutral form itself


_ALIASES = {
    "whatsapp": Dialect.WHATSAPP,
    "markdown": Dialect.MARKDOWN,
    "markdownv2": Dialect.MARKDOWN,
    "md": Dialect.MARKDOWN,
    "html": Dialect.HTML,
}


def parse_dialect(tag) -> Dialect | None:
    """Map a free-form ``extra.format`` tag to a Dialect (``None`` if unknown)."""
    if isinstance(tag, Dialect):
        return tag
    if not isinstance(tag, str):
        return None
    return _ALIASES.get(tag.strip().lower())


class Rule(NamedTuple):
    pattern: re.Pattern
    replacement: str | Callable[[re.Match], str]
    literal: bool = False


def _rule(pattern: str, replacement, literal: bool = False, flags: int = 0) -> Rule:
    return Rule(re.compile(pattern, flags), replacement, literal)


def _quote_lines(match: re.Match) -> str:
    body = match.group(1).strip("\n")
    return "\n".join(f"> {line}" if line else ">" for line in body.split("\n"))


def _unquote_lines(match: re.Match) -> str:
    lines = [re.sub(r"^&gt; ?", "", line) for line in match.group(0).split("\n")]
    return "<blockquote>" + "\n".join(lines) + "</blockquote>"


# A fenced block whose first line could be read as a language tag
_LANG_LINE = re.compile(r"\n*[\w+#-]+\n")


def _fence(match: re.Match) -> str:
    body = match.group(1)
    if _LANG_LINE.match(body):
        body = "\n" + body
    return f"```{body}```"


def _unfence(match: re.Match) -> str:
    body = match.group(1)
    if body.startswith("\n") and _LANG_LINE.match(body, 1):
        body = body[1:]
    return f"<pre>{body}</pre>"


# ----------------------------------------------------------------------
# neutral -> dialect
# ----------------------------------------------------------------------

_FROM_CODE = [
    _rule(r'<pre>\s*<code class="language-([\w+#-]+)">([\s\S]*?)</code>\s*</pre>', "```\\1\n\\2```", True),
    _rule(r'<code class="language-([\w+#-]+)">([\s\S]*?)</code>', "```\\1\n\\2```", True),
    _rule(r"<pre>\s*<code>([\s\S]*?)</code>\s*</pre>", _fence, True),
    _rule(r"<pre>([\s\S]*?)</pre>", _fence, True),
    _rule(r"<code>([\s\S]*?)</code>", "`\\1`", True),
]

_FROM_BLOCK = [
    _rule(r'<a href="([^"<]+)">[\s\S]*?</a>', "\\1"),
    _rule(r"<blockquote>([\s\S]*?)</blockquote>", _quote_lines),
]

_FROM_RULES: dict[Dialect, list[Rule]] = {
    Dialect.WHATSAPP: _FROM_CODE + _FROM_BLOCK + [
        _rule(r"</?(?:b|strong)>", "*"),
        _rule(r"</?(?:i|em)>", "_"),
        _rule(r"</?u>", "~"),
    ],
    Dialect.MARKDOWN: _FROM_CODE + _FROM_BLOCK + [
        _rule(r"</?(?:b|strong)>", "**"),
        _rule(r"</?(?:i|em)>", "_"),
        _rule(r"</?u>", "__"),
    ],
}

# ----------------------------------------------------------------------
# dialect -> neutral
# ----------------------------------------------------------------------

_TO_CODE = [
    _rule(r"```([\w+#-]+)\n([\s\S]*?)```", '<pre><code class="language-\\1">\\2</code></pre>', True),
    _rule(r"```([\s\S]*?)```", _unfence, True),
    _rule(r"`([^`\n]+)`", "<code>\\1</code>", True),
]

_TO_QUOTE = _rule(r"^&gt; ?[^\n]*(?:\n&gt; ?[^\n]*)*", _unquote_lines, flags=re.MULTILINE)

_ITALIC = _rule(r"(?<![\w_])_(?!\s)([^_\n]+?)(?<!\s)_(?![\w_])", "<i>\\1</i>")

_TO_RULES: dict[Dialect, list[Rule]] = {
    Dialect.WHATSAPP: _TO_CODE + [
        _TO_QUOTE,
        _rule(r"(?<![\w*])\*(?!\s)([^*\n]+?)(?<!\s)\*(?![\w*])", "<b>\\1</b>"),
        _ITALIC,
        _rule(r"(?<![\w~])~(?!\s)([^~\n]+?)(?<!\s)~(?![\w~])", "<u>\\1</u>"),
    ],
    Dialect.MARKDOWN: _TO_CODE + [
        _TO_QUOTE,
        _rule(r"\*\*(?!\s)([^*\n]+?)(?<!\s)\*\*", "<b>\\1</b>"),
        _rule(r"__(?!\s)([^_\n]+?)(?<!\s)__", "<u>\\1</u>"),
        _ITALIC,
    ],
}

_PLACEHOLDER = re.compile("\x00(\\d+)\x00")


def _apply(text: str, rules: list[Rule]) -> str:
    parked: list[str] = []

    def park(rule: Rule):
        def sub(match: re.Match) -> str:
            parked.append(match.expand(rule.replacement) if isinstance(rule.replacement, str)
                          else rule.replacement(match))
            return f"\x00{len(parked) - 1}\x00"
        return sub

    for rule in rules:
        text = rule.pattern.sub(park(rule) if rule.literal else rule.replacement, text)

    return _PLACEHOLDER.sub(lambda m: parked[int(m.group(1))], text)


def to_neutral(text: str, dialect: Dialect) -> str:
    """Convert platform text in *dialect* into neutral HTML markup."""
    if not text or dialect == Dialect.HTML:
        return text
    try:
        # Escape first so literal angle brackets never read as tags
        return _apply(html.escape(text, quote=False), _TO_RULES[dialect])
    except (re.error, KeyError, IndexError) as e:
        l.debug(f"markup: to_neutral({dialect.value}) passed text through: {e}")
        return text


def from_neutral(text: str, dialect: Dialect) -> str:
    """Convert neutral HTML markup into *dialect*."""
    if not text or dialect == Dialect.HTML:
        return text
    try:
        # Entities are resolved last so escaped brackets never become tags
        return html.unescape(_apply(text, _FROM_RULES[dialect]))
    except (re.error, KeyError, IndexError) as e:
        l.debug(f"markup: from_neutral({dialect.value}) passed text through: {e}")
        return text


def translate(text: str, source, target: Dialect) -> tuple[str, bool]:
    """Re-render *text* written in *source* markup for *target*.

    Returns ``(text, formatted)``; ``formatted`` is False when *source* is not
    a known dialect and the text was left as plain text.
    """
    src = parse_dialect(source)
    if src is None or not text:
        return text, False
    if src == target:
        return text, True
    return from_neutral(to_neutral(text, src), target), True
