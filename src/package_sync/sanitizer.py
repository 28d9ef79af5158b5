"""
Allow-list HTML sanitizer for remote README and release-note HTML.

Hosts usually bring their own sanitizer and pass it to the repository
client; this one is the default. Tags outside the allow-list are dropped
(their text is kept), the contents of script-like elements are removed, and
only listed attributes survive. URL attributes must use http(s), mailto, or
be relative.
"""

from html import escape
from html.parser import HTMLParser
from typing import Dict, FrozenSet, List, Optional, Tuple

_COMMON_ATTRS = frozenset({'class', 'id', 'title', 'lang', 'dir'})

ALLOWED_TAGS: Dict[str, FrozenSet[str]] = {
    'a': _COMMON_ATTRS | {'href', 'rel', 'target', 'name'},
    'abbr': _COMMON_ATTRS,
    'b': _COMMON_ATTRS,
    'blockquote': _COMMON_ATTRS | {'cite'},
    'br': frozenset(),
    'code': _COMMON_ATTRS,
    'dd': _COMMON_ATTRS,
    'del': _COMMON_ATTRS,
    'details': _COMMON_ATTRS | {'open'},
    'div': _COMMON_ATTRS,
    'dl': _COMMON_ATTRS,
    'dt': _COMMON_ATTRS,
    'em': _COMMON_ATTRS,
    'h1': _COMMON_ATTRS, 'h2': _COMMON_ATTRS, 'h3': _COMMON_ATTRS,
    'h4': _COMMON_ATTRS, 'h5': _COMMON_ATTRS, 'h6': _COMMON_ATTRS,
    'hr': _COMMON_ATTRS,
    'i': _COMMON_ATTRS,
    'img': _COMMON_ATTRS | {'src', 'alt', 'width', 'height'},
    'ins': _COMMON_ATTRS,
    'kbd': _COMMON_ATTRS,
    'li': _COMMON_ATTRS,
    'ol': _COMMON_ATTRS | {'start'},
    'p': _COMMON_ATTRS | {'align'},
    'pre': _COMMON_ATTRS,
    's': _COMMON_ATTRS,
    'span': _COMMON_ATTRS,
    'strong': _COMMON_ATTRS,
    'sub': _COMMON_ATTRS,
    'summary': _COMMON_ATTRS,
    'sup': _COMMON_ATTRS,
    'table': _COMMON_ATTRS,
    'tbody': _COMMON_ATTRS,
    'td': _COMMON_ATTRS | {'colspan', 'rowspan', 'align'},
    'th': _COMMON_ATTRS | {'colspan', 'rowspan', 'align'},
    'thead': _COMMON_ATTRS,
    'tr': _COMMON_ATTRS,
    'u': _COMMON_ATTRS,
    'ul': _COMMON_ATTRS,
}

# Elements whose content is never rendered as text.
DROP_CONTENT_TAGS = frozenset({'script', 'style', 'iframe', 'object', 'embed', 'noscript', 'template', 'svg', 'math'})

VOID_TAGS = frozenset({'br', 'hr', 'img'})

URL_ATTRS = frozenset({'href', 'src', 'cite'})
SAFE_URL_SCHEMES = ('http:', 'https:', 'mailto:')


def _is_safe_url(value: str) -> bool:
    compact = ''.join(value.split()).lower()
    if compact.startswith(SAFE_URL_SCHEMES):
        return True
    # Relative paths and fragments have no scheme before the first '/', '?' or '#'.
    head = compact.split('/', 1)[0].split('?', 1)[0].split('#', 1)[0]
    return ':' not in head


class _AllowListParser(HTMLParser):

    def __init__(self, allowed: Dict[str, FrozenSet[str]]):
        super().__init__(convert_charrefs=True)
        self.allowed = allowed
        self.out: List[str] = []
        self.open_tags: List[str] = []
        self.drop_depth = 0

    def _render_attrs(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> str:
        permitted = self.allowed.get(tag, frozenset())
        rendered = []
        for name, value in attrs:
            name = name.lower()
            if name not in permitted or name.startswith('on'):
                continue
            value = value or ''
            if name in URL_ATTRS and not _is_safe_url(value):
                continue
            rendered.append(f' {name}="{escape(value, quote=True)}"')
        if tag == 'a' and any(n == 'target' for n, _ in attrs):
            rendered.append(' rel="noopener noreferrer"')
        return ''.join(rendered)

    def handle_starttag(self, tag, attrs):
        if tag in DROP_CONTENT_TAGS:
            self.drop_depth += 1
            return
        if self.drop_depth or tag not in self.allowed:
            return
        if tag == 'a':
            attrs = [(n, v) for n, v in attrs if n.lower() != 'rel']
        self.out.append(f'<{tag}{self._render_attrs(tag, attrs)}>')
        if tag not in VOID_TAGS:
            self.open_tags.append(tag)

    def handle_startendtag(self, tag, attrs):
        if tag in DROP_CONTENT_TAGS or self.drop_depth or tag not in self.allowed:
            return
        self.out.append(f'<{tag}{self._render_attrs(tag, attrs)}>')

    def handle_endtag(self, tag):
        if tag in DROP_CONTENT_TAGS:
            if self.drop_depth:
                self.drop_depth -= 1
            return
        if self.drop_depth or tag not in self.allowed or tag in VOID_TAGS:
            return
        if tag not in self.open_tags:
            return
        # Close anything left open inside this element.
        while self.open_tags:
            current = self.open_tags.pop()
            self.out.append(f'</{current}>')
            if current == tag:
                break

    def handle_data(self, data):
        if not self.drop_depth:
            self.out.append(escape(data, quote=False))

    def close_all(self) -> str:
        self.close()
        while self.open_tags:
            self.out.append(f'</{self.open_tags.pop()}>')
        return ''.join(self.out)


def sanitize_html(html: str, allowed: Optional[Dict[str, FrozenSet[str]]] = None) -> str:
    """
    Return ``html`` reduced to the allow-listed tags and attributes.

    Comments, doctype declarations and processing instructions are dropped.
    """
    if not html:
        return ''
    parser = _AllowListParser(ALLOWED_TAGS if allowed is None else allowed)
    parser.feed(html)
    return parser.close_all()
