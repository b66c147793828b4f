"""Kids mode route policy, security headers and session fingerprinting.

These helpers are pure: the FastAPI dependency in `auth.py` and the
`KidsModeService` feed them the request path, route name and method and
act on the result.
"""

import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Dict, Optional

PIN_PATTERN = re.compile(r'^[0-9]{4}$')
MAX_PIN_ATTEMPTS = 5

ALLOWED_ROUTE_NAMES = frozenset({
    'health',
    'dashboard.child-today',
    'dashboard.sessions.complete',
    'kids-mode.exit',
    'kids-mode.status',
    'reviews.index',
    'reviews.session',
    'reviews.show',
    'reviews.process',
})

BLOCKED_ROUTE_NAMES = frozenset({
    'children.index',
    'children.store',
    'children.show',
    'children.update',
    'children.destroy',
    'children.independence-level',
    'subjects.index',
    'subjects.store',
    'subjects.update',
    'subjects.destroy',
    'units.store',
    'units.update',
    'units.destroy',
    'topics.store',
    'topics.update',
    'topics.destroy',
    'topics.content.update',
    'topics.images.store',
    'flashcards.store',
    'flashcards.update',
    'flashcards.destroy',
    'flashcards.import',
    'flashcards.export',
    'flashcards.restore',
    'flashcards.bulk-status',
    'flashcards.import.preview',
    'flashcards.import.text',
    'flashcards.import.text.preview',
    'flashcards.import.history',
    'reviews.enrol',
    'reviews.stats',
    'sessions.index',
    'sessions.store',
    'sessions.update',
    'sessions.schedule',
    'sessions.unschedule',
    'sessions.destroy',
    'kids-mode.enter',
    'kids-mode.settings',
    'kids-mode.pin.update',
    'kids-mode.pin.reset',
    'kids-mode.audit',
})

BLOCKED_PATH_PATTERNS = (
    'dashboard/parent',
    'children',
    'planning',
    'calendar',
    'subjects/create',
    'subjects/*/edit',
    'kids-mode/settings',
    'kids-mode/pin',
)

ACTION_KEYWORDS = ('create', 'edit', 'update', 'delete', 'destroy', 'store')
ACTION_EXCEPTIONS = ('reviews/complete', 'sessions/complete', 'process')
MUTATING_METHODS = frozenset({'POST', 'PUT', 'PATCH', 'DELETE'})

STATIC_EXTENSIONS = (
    '.css', '.js', '.png', '.jpg', '.jpeg', '.gif', '.svg',
    '.woff', '.woff2', '.ttf', '.eot', '.ico', '.webp',
)
STATIC_PREFIXES = ('media/', 'static/', 'css/', 'js/', 'build/')

# responses from these routes must never be cached
SENSITIVE_ROUTE_NAMES = frozenset({
    'kids-mode.exit',
    'kids-mode.settings',
    'kids-mode.pin.update',
    'kids-mode.pin.reset',
})

CONTENT_SECURITY_POLICY = '; '.join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: blob:",
    "font-src 'self' data:",
    "connect-src 'self'",
    "media-src 'self'",
    "object-src 'none'",
    "embed-src 'none'",
    "child-src 'none'",
    "frame-src 'none'",
    "worker-src 'none'",
    "manifest-src 'self'",
    "form-action 'self'",
    "frame-ancestors 'none'",
    "base-uri 'self'",
])

PERMISSIONS_POLICY = ', '.join([
    'camera=()',
    'microphone=()',
    'geolocation=()',
    'accelerometer=()',
    'gyroscope=()',
    'magnetometer=()',
    'usb=()',
    'midi=()',
    'encrypted-media=()',
    'payment=()',
    'web-share=()',
    'fullscreen=(self)',
    'display-capture=()',
])


def _pattern_regex(pattern: str):
    # `*` stands for one path segment
    return re.compile('[^/]+'.join(re.escape(part) for part in pattern.split('*')))


_BLOCKED_PATH_REGEXES = tuple(_pattern_regex(p) for p in BLOCKED_PATH_PATTERNS)


def is_static_asset(path: str) -> bool:
    path = path.lstrip('/')
    return path.endswith(STATIC_EXTENSIONS) or path.startswith(STATIC_PREFIXES)


def is_blocked_route(path: str, route_name: Optional[str]) -> bool:
    """True when the path or route name belongs to a parent-only area."""
    path = path.lstrip('/')
    if route_name and route_name in BLOCKED_ROUTE_NAMES:
        return True
    if any(rx.search(path) for rx in _BLOCKED_PATH_REGEXES):
        return True
    for keyword in ACTION_KEYWORDS:
        if f'/{keyword}' in path or f'{keyword}/' in path:
            if not any(exc in path for exc in ACTION_EXCEPTIONS):
                return True
    return False


def is_route_allowed(path: str, route_name: Optional[str], method: str = 'GET') -> bool:
    """Decide whether a request may proceed while kids mode is active.

    Explicitly allowed route names and static assets always pass. Then
    parent-only routes are refused, and finally any other request that
    would change data.
    """
    if route_name and route_name in ALLOWED_ROUTE_NAMES:
        return True
    if is_static_asset(path):
        return True
    if is_blocked_route(path, route_name):
        return False
    return method.upper() not in MUTATING_METHODS


def security_headers(is_https: bool = False, route_name: Optional[str] = None) -> Dict[str, str]:
    headers = {
        'X-Frame-Options': 'DENY',
        'X-Content-Type-Options': 'nosniff',
        'X-XSS-Protection': '1; mode=block',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
        'Content-Security-Policy': CONTENT_SECURITY_POLICY,
        'Permissions-Policy': PERMISSIONS_POLICY,
    }
    if is_https:
        headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    if route_name in SENSITIVE_ROUTE_NAMES:
        headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, proxy-revalidate'
        headers['Pragma'] = 'no-cache'
        headers['Expires'] = '0'
    return headers


def session_fingerprint(user_agent: Optional[str], ip_address: Optional[str], token_id: Optional[str]) -> str:
    """Hash of the browser, client address and access token id."""
    raw = '|'.join([user_agent or '', ip_address or '', token_id or ''])
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


def fingerprints_match(stored: Optional[str], current: str) -> bool:
    if not stored:
        return False
    return hmac.compare_digest(stored, current)


def lockout_minutes(attempts: int) -> int:
    """Progressive lockout: 5 minutes, 15 minutes, 1 hour, then 24 hours."""
    return {5: 5, 6: 15, 7: 60}.get(attempts, 1440)


def remaining_attempts(attempts: int) -> int:
    return max(0, MAX_PIN_ATTEMPTS - attempts)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
