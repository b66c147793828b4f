"""Rich topic content: markdown rendering, video embeds and content images.

Markdown is rendered with mistune. Links to YouTube and Vimeo become
responsive iframe embeds, links to Khan Academy, Coursera and edX become
platform cards, and `!!! collapse "Title"` blocks become `<details>`.
Every rendered fragment goes through `sanitize_html` before it leaves
this module.
"""

from __future__ import annotations

import io
import math
import re
import shutil
from datetime import datetime, timezone
from html import escape
from html.parser import HTMLParser
from pathlib import Path
from typing import Dict, List, Optional

import mistune
from PIL import Image, UnidentifiedImageError

from .html_sanitizer import sanitize_html, strip_tags

CONTENT_FORMATS = ('plain', 'markdown', 'html')

YOUTUBE_PATTERN = re.compile(
    r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([a-zA-Z0-9_-]{11})(?:\S+t=(\d+))?'
)
VIMEO_PATTERN = re.compile(r'vimeo\.com/(?:video/)?(\d+)(?:#t=(\d+))?')
PLATFORM_PATTERNS = (
    ('khan_academy', re.compile(r'khanacademy\.org/.*/([a-zA-Z0-9_-]+)')),
    ('coursera', re.compile(r'coursera\.org/learn/([^/]+)')),
    ('edx', re.compile(r'edx\.org/course/([^/]+)')),
)
PLATFORM_NAMES = {'khan_academy': 'Khan Academy', 'coursera': 'Coursera', 'edx': 'edX'}
PLATFORM_ICONS = {'khan_academy': '\U0001F393', 'coursera': '\U0001F4DA', 'edx': '\U0001F3EB'}

FILE_LINK_PATTERN = re.compile(
    r'\[([^\]]+)\]\(([^)]+\.(?:pdf|doc|docx|xls|xlsx|ppt|pptx|zip|rar|mp3|mp4|avi|mov|jpg|jpeg|png|gif))\)',
    re.IGNORECASE,
)
VIDEO_COUNT_PATTERNS = (
    re.compile(r'(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([a-zA-Z0-9_-]+)'),
    re.compile(r'vimeo\.com/(?:video/)?(\d+)'),
    re.compile(r'khanacademy\.org/.*/([a-zA-Z0-9_-]+)'),
    re.compile(r'coursera\.org/learn/([^/]+)'),
    re.compile(r'edx\.org/course/([^/]+)'),
)
INTERACTIVE_PATTERNS = (
    re.compile(r'!!!\s+(collapse|collapse-open)'),
    re.compile(r'<details'),
    re.compile(r'\|.*\|.*\|'),
)
COLLAPSE_PATTERN = re.compile(
    r'^!!!\s+(collapse|collapse-open)\s+"([^"]*)"[ \t]*\n(.*?)^!!![ \t]*$',
    re.MULTILINE | re.DOTALL,
)
WORD_PATTERN = re.compile(r"[^\W\d_]+(?:['-][^\W\d_]+)*")

CALLOUT_ICONS = {
    'tip': '\U0001F4A1',
    'warning': '⚠️',
    'note': '\U0001F4DD',
    'info': 'ℹ️',
    'success': '✅',
    'error': '❌',
}
DEFAULT_CALLOUT_ICON = '\U0001F4CC'

ALLOWED_IMAGE_MIMES = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/gif': 'gif',
    'image/webp': 'webp',
    'image/svg+xml': 'svg',
}
MAX_IMAGE_BYTES = 5 * 1024 * 1024
# uploaded SVG is served as a sandboxed download
SVG_RESPONSE_HEADERS = {
    'Content-Disposition': 'attachment',
    'Content-Security-Policy': "default-src 'none'; style-src 'unsafe-inline'; sandbox",
    'X-Content-Type-Options': 'nosniff',
}
MAX_IMAGE_SLUG = 50
IFRAME_ALLOW = 'accelerometer; autoplay; clipboard-write; encrypted-media; gyroscope; picture-in-picture'


def parse_video_url(url: str) -> Optional[Dict]:
    """Identify a video or course platform URL, or return None."""
    m = YOUTUBE_PATTERN.search(url or '')
    if m:
        return {'type': 'youtube', 'id': m.group(1), 'start_time': int(m.group(2)) if m.group(2) else None}
    m = VIMEO_PATTERN.search(url or '')
    if m:
        return {'type': 'vimeo', 'id': m.group(1), 'start_time': int(m.group(2)) if m.group(2) else None}
    for platform, pattern in PLATFORM_PATTERNS:
        m = pattern.search(url or '')
        if m:
            return {'type': platform, 'id': m.group(1), 'start_time': None}
    return None


def embed_url(info: Dict) -> Optional[str]:
    if info['type'] == 'youtube':
        start = f"&start={info['start_time']}" if info.get('start_time') else ''
        return f"https://www.youtube.com/embed/{info['id']}?rel=0{start}"
    if info['type'] == 'vimeo':
        start = f"#t={info['start_time']}s" if info.get('start_time') else ''
        return f"https://player.vimeo.com/video/{info['id']}{start}"
    return None


def validate_video_url(url: str) -> Dict:
    """Return embed details for a supported video URL."""
    info = parse_video_url(url)
    if info is None:
        return {'valid': False, 'error': 'Unsupported video platform or invalid URL format'}
    if info['type'] == 'youtube':
        return {
            'valid': True,
            'type': 'youtube',
            'id': info['id'],
            'start_time': info['start_time'],
            'embed_url': f"https://www.youtube.com/embed/{info['id']}",
            'thumbnail': f"https://img.youtube.com/vi/{info['id']}/maxresdefault.jpg",
        }
    if info['type'] == 'vimeo':
        return {
            'valid': True,
            'type': 'vimeo',
            'id': info['id'],
            'embed_url': f"https://player.vimeo.com/video/{info['id']}",
            'thumbnail': None,
        }
    return {
        'valid': True,
        'type': info['type'],
        'id': info['id'],
        'embed_url': None,
        'original_url': url,
        'platform_name': info['type'].replace('_', ' ').capitalize(),
    }


def render_video_embed(info: Dict, title: str, original_url: str) -> str:
    href = escape(original_url, quote=True)
    if info['type'] in ('youtube', 'vimeo'):
        label = 'Watch on YouTube' if info['type'] == 'youtube' else 'Watch on Vimeo'
        return (
            f'<div class="video-embed-container {info["type"]}-embed">'
            f'<div class="video-embed-responsive">'
            f'<iframe src="{escape(embed_url(info), quote=True)}" title="{escape(strip_tags(title), quote=True)}" '
            f'frameborder="0" allow="{IFRAME_ALLOW}" allowfullscreen loading="lazy" width="560" height="315"></iframe>'
            f'</div>'
            f'<div class="video-embed-metadata"><h4 class="video-embed-title">{title}</h4>'
            f'<a href="{href}" target="_blank" rel="noopener noreferrer" class="video-embed-link">{label}</a></div>'
            f'</div>'
        )
    name = PLATFORM_NAMES.get(info['type'], info['type'].capitalize())
    icon = PLATFORM_ICONS.get(info['type'], '\U0001F3A5')
    return (
        f'<div class="educational-embed {info["type"]}-embed">'
        f'<div class="educational-embed-icon">{icon}</div>'
        f'<div class="educational-embed-content"><h4 class="educational-embed-title">{title}</h4>'
        f'<span class="educational-embed-platform">{name}</span>'
        f'<a href="{href}" target="_blank" rel="noopener noreferrer" class="educational-embed-link">Access on {name}</a>'
        f'</div></div>'
    )


class ContentRenderer(mistune.HTMLRenderer):
    """HTML renderer that turns video links into embeds."""

    def link(self, text, url, title=None):
        info = parse_video_url(url)
        if info is not None:
            return render_video_embed(info, text or url, url)
        return super().link(text, url, title)


_markdown = mistune.create_markdown(
    renderer=ContentRenderer(escape=True),
    plugins=['strikethrough', 'table', 'url'],
)


def _render_markdown_fragment(markdown: str) -> str:
    return _markdown(markdown or '')


def markdown_to_html(markdown: str) -> str:
    """Render markdown (including collapse blocks) to sanitized HTML."""
    parts = []
    last = 0
    for m in COLLAPSE_PATTERN.finditer(markdown or ''):
        parts.append(_render_markdown_fragment(markdown[last:m.start()]))
        is_open = ' open' if m.group(1) == 'collapse-open' else ''
        parts.append(
            f'<details class="collapsible-section"{is_open}>'
            f'<summary>{escape(m.group(2))}</summary>'
            f'{_render_markdown_fragment(m.group(3))}</details>\n'
        )
        last = m.end()
    parts.append(_render_markdown_fragment((markdown or '')[last:]))
    return sanitize_html(''.join(parts))


def plain_to_html(text: str) -> str:
    return escape(text or '').replace('\n', '<br />\n')


def count_words(text: str) -> int:
    return len(WORD_PATTERN.findall(text or ''))


def generate_content_metadata(content: str, fmt: str) -> Dict:
    if fmt == 'markdown':
        plain = strip_tags(markdown_to_html(content))
    elif fmt == 'html':
        plain = strip_tags(content)
    else:
        plain = content or ''
    words = count_words(plain)
    return {
        'word_count': words,
        'reading_time': max(1, math.ceil(words / 200)),
        'character_count': len(plain),
        'last_updated': datetime.now(timezone.utc).isoformat(),
        'format': fmt,
    }


def extract_enhanced_metadata(content: str) -> Dict:
    """Video, file and interactive element counts plus a complexity label."""
    content = content or ''
    video_count = sum(len(p.findall(content)) for p in VIDEO_COUNT_PATTERNS)
    file_count = len(FILE_LINK_PATTERN.findall(content))
    interactive = any(p.search(content) for p in INTERACTIVE_PATTERNS)
    factors = sum([
        video_count > 0,
        file_count > 0,
        interactive,
        video_count > 2,
        file_count > 3,
    ])
    if factors >= 4:
        complexity = 'advanced'
    elif factors >= 2:
        complexity = 'intermediate'
    else:
        complexity = 'basic'
    return {
        'has_videos': video_count > 0,
        'has_files': file_count > 0,
        'has_interactive_elements': interactive,
        'video_count': video_count,
        'file_count': file_count,
        'estimated_video_time': video_count * 10,
        'complexity_score': complexity,
    }


def process_rich_content(content: str, fmt: str) -> Dict:
    """Render stored topic content to HTML and compute its metadata."""
    if fmt == 'markdown':
        html = markdown_to_html(content)
        metadata = generate_content_metadata(content, 'markdown')
        metadata.update(extract_enhanced_metadata(content))
    elif fmt == 'html':
        html = sanitize_html(content)
        metadata = generate_content_metadata(content, 'html')
    else:
        html = plain_to_html(content)
        metadata = generate_content_metadata(content, 'plain')
    return {'html': html, 'metadata': metadata}


class _MarkdownWriter(HTMLParser):
    """Walk HTML and emit the equivalent markdown."""

    BLOCKS = {'p', 'div', 'section', 'blockquote', 'pre', 'ul', 'ol', 'table', 'details'}

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.out: List[str] = []
        self.lists: List[List] = []
        self.href: List[Optional[str]] = []
        self.in_pre = False
        self.quote_depth = 0

    def _newline(self, count: int = 1) -> None:
        text = ''.join(self.out)
        have = len(text) - len(text.rstrip('\n'))
        if text and have < count:
            self.out.append('\n' * (count - have))

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag in ('h1', 'h2', 'h3', 'h4', 'h5', 'h6'):
            self._newline(2)
            self.out.append('#' * int(tag[1]) + ' ')
        elif tag in ('p', 'div', 'section', 'details'):
            self._newline(2)
        elif tag == 'summary':
            self._newline(2)
            self.out.append('**')
        elif tag == 'br':
            self.out.append('  \n')
        elif tag in ('strong', 'b'):
            self.out.append('**')
        elif tag in ('em', 'i'):
            self.out.append('*')
        elif tag in ('del', 's'):
            self.out.append('~~')
        elif tag == 'code' and not self.in_pre:
            self.out.append('`')
        elif tag == 'pre':
            self._newline(2)
            self.out.append('```\n')
            self.in_pre = True
        elif tag == 'blockquote':
            self._newline(2)
            self.quote_depth += 1
            self.out.append('> ' * self.quote_depth)
        elif tag == 'hr':
            self._newline(2)
            self.out.append('---\n\n')
        elif tag in ('ul', 'ol'):
            self._newline(1 if self.lists else 2)
            self.lists.append([tag, 0])
        elif tag == 'li':
            self._newline(1)
            depth = max(0, len(self.lists) - 1)
            if self.lists and self.lists[-1][0] == 'ol':
                self.lists[-1][1] += 1
                marker = f"{self.lists[-1][1]}. "
            else:
                marker = '- '
            self.out.append('  ' * depth + marker)
        elif tag == 'a':
            self.href.append(attrs.get('href'))
            self.out.append('[')
        elif tag == 'img':
            self.out.append(f"![{attrs.get('alt') or ''}]({attrs.get('src') or ''})")
        elif tag == 'iframe' and attrs.get('src'):
            self.out.append(f"[{attrs.get('title') or attrs['src']}]({attrs['src']})")

    def handle_endtag(self, tag):
        if tag in ('h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'p', 'div', 'section', 'details'):
            self._newline(2)
        elif tag == 'summary':
            self.out.append('**')
            self._newline(2)
        elif tag in ('strong', 'b'):
            self.out.append('**')
        elif tag in ('em', 'i'):
            self.out.append('*')
        elif tag in ('del', 's'):
            self.out.append('~~')
        elif tag == 'code' and not self.in_pre:
            self.out.append('`')
        elif tag == 'pre':
            self._newline(1)
            self.out.append('```')
            self.in_pre = False
            self._newline(2)
        elif tag == 'blockquote':
            self.quote_depth = max(0, self.quote_depth - 1)
            self._newline(2)
        elif tag in ('ul', 'ol'):
            if self.lists:
                self.lists.pop()
            self._newline(1 if self.lists else 2)
        elif tag == 'a':
            href = self.href.pop() if self.href else None
            self.out.append(f"]({href})" if href else ']')

    def handle_data(self, data):
        if self.in_pre:
            self.out.append(data)
            return
        text = re.sub(r'\s+', ' ', data)
        if not ''.join(self.out).strip() or ''.join(self.out).endswith(('\n', '> ', '- ', '. ')):
            text = text.lstrip()
        if text:
            self.out.append(text)

    def markdown(self) -> str:
        text = ''.join(self.out)
        text = re.sub(r'[ \t]+\n', lambda m: '  \n' if m.group(0).startswith('  ') else '\n', text)
        text = re.sub(r'\n{3,}', '\n\n', text)
        return text.strip()


def html_to_markdown(html: str) -> str:
    writer = _MarkdownWriter()
    writer.feed(sanitize_html(html))
    writer.close()
    return writer.markdown()


def convert_content_format(content: str, from_format: str, to_format: str) -> str:
    """Convert content between plain, markdown and html."""
    if from_format == to_format:
        return content
    key = (from_format, to_format)
    if key == ('plain', 'markdown'):
        return content
    if key == ('plain', 'html'):
        return plain_to_html(content)
    if key == ('markdown', 'html'):
        return markdown_to_html(content)
    if key == ('markdown', 'plain'):
        return strip_tags(markdown_to_html(content)).strip()
    if key == ('html', 'markdown'):
        return html_to_markdown(content)
    if key == ('html', 'plain'):
        return strip_tags(content).strip()
    raise ValueError(f"Conversion from {from_format} to {to_format} not supported")


def create_callout(callout_type: str, title: str, content: str) -> str:
    icon = CALLOUT_ICONS.get(callout_type, DEFAULT_CALLOUT_ICON)
    return f"> {icon} **{title}**\n>\n> {content}\n"


def create_collapsible_section(title: str, content: str, is_open: bool = False) -> str:
    directive = 'collapse-open' if is_open else 'collapse'
    return f'!!! {directive} "{title}"\n\n{content}\n\n!!!\n'


_MD_IMAGE = re.compile(r'!\[([^\]]*)\]\(([^)]+)\)')
_HTML_IMAGE = re.compile(r'<img[^>]+src="([^"]+)"[^>]*alt="([^"]*)"[^>]*>', re.IGNORECASE)


def extract_embedded_images(content: str, fmt: str) -> List[Dict]:
    if fmt == 'markdown':
        return [{'alt_text': m.group(1), 'url': m.group(2), 'markdown': m.group(0)}
                for m in _MD_IMAGE.finditer(content or '')]
    if fmt == 'html':
        return [{'url': m.group(1), 'alt_text': m.group(2), 'html': m.group(0)}
                for m in _HTML_IMAGE.finditer(content or '')]
    return []


def generate_image_markdown(image: Dict) -> str:
    return f"![{image['alt_text']}]({image['url']})"


# -- content images ----------------------------------------------------------

def slugify(value: str) -> str:
    slug = re.sub(r'[^a-z0-9]+', '-', (value or '').lower()).strip('-')
    return slug[:MAX_IMAGE_SLUG].strip('-') or 'image'


def topic_image_dir(media_root: Path, topic_id: int) -> Path:
    return Path(media_root) / 'topic-content' / str(topic_id) / 'images'


def unique_image_filename(directory: Path, original_name: str, extension: str) -> str:
    base = slugify(Path(original_name or '').stem)
    filename = f"{base}.{extension}"
    counter = 1
    while (directory / filename).exists():
        filename = f"{base}-{counter}.{extension}"
        counter += 1
    return filename


def inspect_image(payload: bytes, mime: str) -> Dict:
    """Validate an upload and return its width and height.

    Raster images are opened with Pillow; SVG is text and has no
    intrinsic pixel size.
    """
    if mime not in ALLOWED_IMAGE_MIMES:
        raise ValueError('Invalid image format. Allowed: JPEG, PNG, GIF, WebP, SVG')
    if len(payload) > MAX_IMAGE_BYTES:
        raise ValueError('Image too large. Maximum size: 5MB')
    if not payload:
        raise ValueError('Image is empty')
    if mime == 'image/svg+xml':
        head = payload[:1024].decode('utf-8', errors='ignore').lower()
        if '<svg' not in head:
            raise ValueError('Invalid SVG image')
        return {'width': None, 'height': None}
    try:
        with Image.open(io.BytesIO(payload)) as img:
            img.verify()
        with Image.open(io.BytesIO(payload)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError):
        raise ValueError('Uploaded file is not a valid image')
    return {'width': width, 'height': height}


def store_content_image(media_root: Path, topic_id: int, original_name: str, mime: str,
                        payload: bytes, alt_text: Optional[str] = None, url_prefix: str = '/media') -> Dict:
    """Save an image for a topic and return its URL and markdown snippet."""
    dimensions = inspect_image(payload, mime)
    directory = topic_image_dir(media_root, topic_id)
    directory.mkdir(parents=True, exist_ok=True)
    filename = unique_image_filename(directory, original_name, ALLOWED_IMAGE_MIMES[mime])
    (directory / filename).write_bytes(payload)
    relative = f"topic-content/{topic_id}/images/{filename}"
    image = {
        'filename': filename,
        'original_name': original_name,
        'path': relative,
        'url': f"{url_prefix}/{relative}",
        'alt_text': alt_text or Path(original_name or '').stem,
        'mime_type': mime,
        'size': len(payload),
        'dimensions': dimensions,
        'uploaded_at': datetime.now(timezone.utc).isoformat(),
    }
    image['markdown'] = generate_image_markdown(image)
    return image


def cleanup_content_images(media_root: Path, topic_id: int) -> bool:
    """Remove the topic's whole `topic-content/{id}` directory."""
    directory = topic_image_dir(media_root, topic_id).parent
    if directory.exists():
        shutil.rmtree(directory)
    return True
