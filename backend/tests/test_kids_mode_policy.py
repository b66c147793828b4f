import pytest

from homeschool.utils import kids_mode as policy


@pytest.mark.parametrize('path,name,method', [
    ('/children/3/today', 'dashboard.child-today', 'GET'),
    ('/children/3/reviews', 'reviews.index', 'GET'),
    ('/reviews/9/process', 'reviews.process', 'POST'),
    ('/sessions/4/complete', 'dashboard.sessions.complete', 'POST'),
    ('/kids-mode/exit', 'kids-mode.exit', 'POST'),
    ('/media/topic-content/1/images/leaf.png', None, 'GET'),
    ('/topics/2', 'topics.show', 'GET'),
])
def test_allowed_requests(path, name, method):
    assert policy.is_route_allowed(path, name, method)


@pytest.mark.parametrize('path,name,method', [
    ('/children', 'children.index', 'GET'),
    ('/children/3/reviews/stats', 'reviews.stats', 'GET'),
    ('/subjects', 'subjects.store', 'POST'),
    ('/kids-mode/settings', 'kids-mode.settings', 'GET'),
    ('/planning/week', None, 'GET'),
    ('/subjects/4/edit', None, 'GET'),
    ('/units/2/topics/create', None, 'GET'),
    ('/topics/2/something', None, 'POST'),
])
def test_blocked_requests(path, name, method):
    assert not policy.is_route_allowed(path, name, method)


def test_action_exceptions_are_not_blocked():
    assert not policy.is_blocked_route('/reviews/complete/edit', None)
    assert not policy.is_blocked_route('/reviews/3/process/update', None)
    assert policy.is_blocked_route('/topics/1/delete', None)


def test_security_headers():
    headers = policy.security_headers()
    assert headers['X-Frame-Options'] == 'DENY'
    assert "frame-ancestors 'none'" in headers['Content-Security-Policy']
    assert 'camera=()' in headers['Permissions-Policy']
    assert 'Strict-Transport-Security' not in headers
    assert 'Cache-Control' not in headers
    sensitive = policy.security_headers(is_https=True, route_name='kids-mode.exit')
    assert sensitive['Strict-Transport-Security'] == 'max-age=31536000; includeSubDomains'
    assert sensitive['Cache-Control'].startswith('no-store')
    assert sensitive['Pragma'] == 'no-cache'


def test_fingerprint_binds_agent_address_and_token():
    base = policy.session_fingerprint('Mozilla', '10.0.0.1', 'jti-1')
    assert len(base) == 64
    assert policy.fingerprints_match(base, policy.session_fingerprint('Mozilla', '10.0.0.1', 'jti-1'))
    assert not policy.fingerprints_match(base, policy.session_fingerprint('Mozilla', '10.0.0.2', 'jti-1'))
    assert not policy.fingerprints_match(base, policy.session_fingerprint('Mozilla', '10.0.0.1', 'jti-2'))
    assert not policy.fingerprints_match(None, base)


@pytest.mark.parametrize('attempts,minutes', [(5, 5), (6, 15), (7, 60), (8, 1440), (20, 1440)])
def test_progressive_lockout(attempts, minutes):
    assert policy.lockout_minutes(attempts) == minutes


def test_remaining_attempts_never_negative():
    assert policy.remaining_attempts(0) == 5
    assert policy.remaining_attempts(4) == 1
    assert policy.remaining_attempts(9) == 0


def test_pin_pattern():
    assert policy.PIN_PATTERN.match('0042')
    assert not policy.PIN_PATTERN.match('42')
    assert not policy.PIN_PATTERN.match('12a4')
    assert not policy.PIN_PATTERN.match('12345')
