"""Allow-list HTML sanitizer for topic content and imported card text."""

from __future__ import annotations

import re
from html import escape, unescape
from html.parser import HTMLParser
from typing import Iterable
from urllib.parse import urlsplit

ALLOWED_TAGS: Iterable[str] = {
    'a', 'abbr', 'b', 'blockquote', 'br', 'code', 'del', 'details', 'div', 'em',
    'figcaption', 'figure', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'hr', 'i', 'iframe',
    'img', 'li', 'ol', 'p', 'pre', 's', 'section', 'small', 'span', 'strong', 'sub',
    'summary', 'sup', 'table', 'tbody', 'td', 'tfoot', 'th', 'thead', 'tr', 'u', 'ul',
}

VOID_TAGS = {'br', 'hr', 'img'}

# content of these is dropped entirely, not just the tags
DROP_CONTENT_TAGS = {'script', 'style', 'object', 'embed', 'form', 'textarea', 'select'}

ALLOWED_ATTRIBUTES = {
    'a': {'href', 'title', 'target', 'rel', 'class'},
    'code': {'class'},
    'details': {'class', 'open'},
    'div': {'class'},
    'figure': {'class'},
    'iframe': {'src', 'width', 'height', 'allow', 'allowfullscreen', 'loading', 'title', 'class', 'frameborder'},
    'img': {'alt', 'src', 'title', 'width', 'height', 'class', 'loading'},
    'li': {'class'},
    'ol': {'class', 'start'},
    'p': {'class'},
    'pre': {'class'},
    'section': {'class'},
    'span': {'class'},
    'summary': {'class'},
    'table': {'class'},
    'td': {'class', 'colspan', 'rowspan', 'align'},
    'th': {'class', 'colspan', 'rowspan', 'scope', 'align'},
    'ul': {'class'},
}

URL_ATTRIBUTES = {'href', 'src'}
ALLOWED_PROTOCOLS = {'http', 'https', 'mailto'}

IFRAME_SRC_PATTERN = re.compile(
    r'^https://(www\.youtube\.com/embed/|player\.vimeo\.com/video/|www\.khanacademy\.org/)'
)


def _is_safe_url(value: str) -> bool:
    value = value.strip()
    if not value:
        return False
    if value.startswith(('#', '/')):
        return True
    parts = urlsplit(value)
    if not parts.scheme:
        return True
    return parts.scheme.lower() in ALLOWED_PROTOCOLS


class _ContentSanitizer(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=False)
        self._output: list[str] = []
        self._open_tags: list[str] = []
        self._drop_depth = 0

    def _clean_attrs(self, tag: str, attrs: list[tuple[str, str | None]]) -> list[str] | None:
        allowed = ALLOWED_ATTRIBUTES.get(tag, set())
        cleaned: list[str] = []
        for name, value in attrs:
            if name not in allowed:
                continue
            if value is None:
                # boolean attributes such as `open` and `allowfullscreen`
                cleaned.append(name)
                continue
            value = value.strip()
            if name in URL_ATTRIBUTES and not _is_safe_url(value):
                continue
            if tag == 'iframe' and name == 'src' and not IFRAME_SRC_PATTERN.match(value):
                return None
            cleaned.append(f'{name}="{escape(value, quote=True)}"')
        if tag == 'iframe' and not any(c.startswith('src=') for c in cleaned):
            return None
        return cleaned

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth += 1
            return
        if self._drop_depth or tag not in ALLOWED_TAGS:
            return
        cleaned = self._clean_attrs(tag, attrs)
        if cleaned is None:
            return
        attr_string = (' ' + ' '.join(cleaned)) if cleaned else ''
        self._output.append(f'<{tag}{attr_string}>')
        if tag not in VOID_TAGS:
            self._open_tags.append(tag)

    def handle_endtag(self, tag: str) -> None:
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth = max(0, self._drop_depth - 1)
            return
        if self._drop_depth or tag not in ALLOWED_TAGS or tag in VOID_TAGS:
            return
        for index in range(len(self._open_tags) - 1, -1, -1):
            if self._open_tags[index] == tag:
                # close anything left open inside this element
                for inner in reversed(self._open_tags[index + 1:]):
                    self._output.append(f'</{inner}>')
                del self._open_tags[index:]
                self._output.append(f'</{tag}>')
                break

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self.handle_starttag(tag, attrs)
        if tag in VOID_TAGS and self._output and self._output[-1].startswith(f'<{tag}'):
            self._output[-1] = self._output[-1][:-1] + ' />'
        elif tag not in VOID_TAGS:
            self.handle_endtag(tag)

    def handle_data(self, data: str) -> None:
        if not self._drop_depth:
            self._output.append(escape(data, quote=False))

    def handle_entityref(self, name: str) -> None:
        if not self._drop_depth:
            self._output.append(f'&{name};')

    def handle_charref(self, name: str) -> None:
        if not self._drop_depth:
            self._output.append(f'&#{name};')

    def get_html(self) -> str:
        tail = [f'</{tag}>' for tag in reversed(self._open_tags)]
        return ''.join(self._output + tail)


def sanitize_html(raw_html: str | None) -> str:
    """Strip every tag, attribute and URL outside the allow-list."""
    if not raw_html:
        return ''
    parser = _ContentSanitizer()
    parser.feed(raw_html)
    parser.close()
    return parser.get_html()


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._drop_depth = 0

    def handle_starttag(self, tag, attrs):
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth += 1
        elif tag == 'br':
            self._parts.append('\n')

    def handle_endtag(self, tag):
        if tag in DROP_CONTENT_TAGS:
            self._drop_depth = max(0, self._drop_depth - 1)

    def handle_data(self, data):
        if not self._drop_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        return ''.join(self._parts)


def strip_tags(raw_html: str | None) -> str:
    """Return the text content of an HTML fragment with entities decoded."""
    if not raw_html:
        return ''
    if '<' not in raw_html:
        return unescape(raw_html)
    parser = _TextExtractor()
    parser.feed(raw_html)
    parser.close()
    return parser.get_text()
