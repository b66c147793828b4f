import uuid
from datetime import datetime, timezone

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from homeschool import models, services
from homeschool.database import engine
from homeschool.main import app
from homeschool.utils import kids_mode as policy


def set_pin(client, headers, pin='1234'):
    r = client.put('/kids-mode/pin', json={'pin': pin, 'pin_confirmation': pin}, headers=headers)
    assert r.status_code == 200
    return r


def enter(client, headers, child_id):
    r = client.post(f'/kids-mode/enter/{child_id}', headers=headers)
    assert r.status_code == 200
    return r.json()


def test_pin_setup_and_validation(client, headers):
    r = client.get('/kids-mode/settings', headers=headers)
    assert r.json()['has_pin'] is False
    assert client.put('/kids-mode/pin', json={'pin': '12a4', 'pin_confirmation': '12a4'}, headers=headers).status_code == 422
    r = client.put('/kids-mode/pin', json={'pin': '1234', 'pin_confirmation': '4321'}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == 'PIN confirmation does not match'
    set_pin(client, headers)
    settings = client.get('/kids-mode/settings', headers=headers).json()
    assert settings['has_pin'] is True
    assert settings['attempts_remaining'] == 5
    assert settings['is_locked'] is False
    r = client.delete('/kids-mode/pin', headers=headers)
    assert r.status_code == 200
    assert client.get('/kids-mode/settings', headers=headers).json()['has_pin'] is False


def test_kids_mode_blocks_parent_routes_until_exit(client, headers, curriculum):
    child_id = curriculum['child_id']
    set_pin(client, headers)
    body = enter(client, headers, child_id)
    assert body['redirect'] == f'/children/{child_id}/today'
    assert body['child_name'] == 'Ada'

    status = client.get('/kids-mode/status', headers=headers).json()
    assert status['kids_mode_active'] is True
    assert status['child_id'] == child_id

    blocked = client.get('/children', headers=headers)
    assert blocked.status_code == 403
    assert blocked.json()['detail'] == {'error': 'Access denied in kids mode', 'redirect': f'/children/{child_id}/today'}
    assert client.post('/subjects', json={'name': 'Art'}, headers=headers).status_code == 403
    assert client.put('/kids-mode/pin', json={'pin': '0000', 'pin_confirmation': '0000'}, headers=headers).status_code == 403
    assert client.get('/kids-mode/audit', headers=headers).status_code == 403

    today = client.get(f'/children/{child_id}/today', headers=headers)
    assert today.status_code == 200
    assert today.headers['X-Frame-Options'] == 'DENY'
    assert 'Content-Security-Policy' in today.headers
    assert client.get(f'/children/{child_id}/reviews', headers=headers).status_code == 200

    wrong = client.post('/kids-mode/exit', json={'pin': '9999'}, headers=headers)
    assert wrong.status_code == 400
    assert wrong.json()['detail']['attempts_remaining'] == 4
    assert wrong.json()['detail']['locked'] is False

    ok = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=headers)
    assert ok.status_code == 200
    assert ok.json() == {'message': 'Kids mode deactivated successfully', 'redirect': '/children'}
    assert ok.headers['Cache-Control'].startswith('no-store')

    assert client.get('/children', headers=headers).status_code == 200
    assert 'X-Frame-Options' not in client.get('/children', headers=headers).headers
    actions = {e['action'] for e in client.get('/kids-mode/audit', headers=headers).json()}
    assert {'pin_set', 'enter', 'blocked_route', 'pin_failed', 'exit'} <= actions


def test_exit_checks_state_and_pin_format(client, headers, curriculum):
    r = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail'] == {'error': 'Kids mode is not active'}
    enter(client, headers, curriculum['child_id'])
    r = client.post('/kids-mode/exit', json={'pin': 'abcd'}, headers=headers)
    assert r.status_code == 422
    assert r.json()['detail'] == {'error': 'PIN must be exactly 4 digits'}
    r = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail']['error'].startswith('PIN is not set up')


def test_progressive_lockout_after_five_failures(client, headers, curriculum):
    set_pin(client, headers)
    enter(client, headers, curriculum['child_id'])
    for remaining in (4, 3, 2, 1):
        r = client.post('/kids-mode/exit', json={'pin': '0000'}, headers=headers)
        assert r.status_code == 400
        assert r.json()['detail']['attempts_remaining'] == remaining
    r = client.post('/kids-mode/exit', json={'pin': '0000'}, headers=headers)
    assert r.status_code == 400
    assert r.json()['detail']['locked'] is True
    assert r.json()['detail']['lockout_minutes'] == 5

    locked = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=headers)
    assert locked.status_code == 429
    assert locked.json()['detail']['error'].startswith('Too many failed attempts')
    assert client.get('/kids-mode/status', headers=headers).json()['kids_mode_active'] is True


def test_other_token_cannot_exit_and_revokes_sessions(client, login_as):
    username = 'fingerprint-parent'
    first = login_as(username)
    child = client.post('/children', json={'name': 'Max', 'grade': '1'}, headers=first).json()
    set_pin(client, first)
    enter(client, first, child['id'])

    second = login_as(username)
    r = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=second)
    assert r.status_code == 403
    assert r.json()['detail'] == {'error': 'Security violation detected. Please login again.'}

    for old in (first, second):
        revoked = client.get('/kids-mode/status', headers=old)
        assert revoked.status_code == 401
        assert revoked.json()['detail'] == 'token revoked'

    fresh = login_as(username)
    assert client.get('/kids-mode/status', headers=fresh).json()['kids_mode_active'] is False
    actions = [e['action'] for e in client.get('/kids-mode/audit', headers=fresh).json()]
    assert 'fingerprint_mismatch' in actions


def test_requests_without_token_are_rejected(client):
    assert client.get('/children').status_code in (401, 403)
    r = client.get('/children', headers={'Authorization': 'Bearer invalid.token.here'})
    assert r.status_code == 401
    assert client.get('/health').json() == {'status': 'ok'}


def _prefs(username):
    with Session(engine) as db:
        user = db.exec(select(models.User).where(models.User.username == username)).one()
        return db.exec(select(models.UserPreferences).where(models.UserPreferences.user_id == user.id)).one()


def _unlock(username):
    """Expire the stored lockout while keeping the failed attempt count."""
    with Session(engine) as db:
        user = db.exec(select(models.User).where(models.User.username == username)).one()
        prefs = db.exec(select(models.UserPreferences).where(models.UserPreferences.user_id == user.id)).one()
        prefs.kids_mode_pin_locked_until = None
        db.add(prefs)
        db.commit()


def _locked_for_minutes(username):
    locked_until = policy.as_utc(_prefs(username).kids_mode_pin_locked_until)
    return (locked_until - datetime.now(timezone.utc)).total_seconds() / 60


def _fail_five_times(client, headers):
    for _ in range(5):
        assert client.post('/kids-mode/exit', json={'pin': '0000'}, headers=headers).status_code == 400


def test_lockout_grows_after_sixth_and_seventh_failure(client, login_as):
    username = f'lockout-{uuid.uuid4().hex[:8]}'
    h = login_as(username)
    child = client.post('/children', json={'name': 'Lou', 'grade': '2'}, headers=h).json()
    set_pin(client, h)
    enter(client, h, child['id'])
    _fail_five_times(client, h)
    assert 4 < _locked_for_minutes(username) <= 5

    for expected in (15, 60):
        _unlock(username)
        services.pin_rate_limiter.reset()
        r = client.post('/kids-mode/exit', json={'pin': '0000'}, headers=h)
        assert r.status_code == 400
        assert r.json()['detail']['locked'] is True
        assert r.json()['detail']['lockout_minutes'] == expected
        assert expected - 1 < _locked_for_minutes(username) <= expected

    _unlock(username)
    services.pin_rate_limiter.reset()
    ok = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=h)
    assert ok.status_code == 200
    assert _prefs(username).kids_mode_pin_attempts == 0


def test_user_throttle_returns_retry_after(client, login_as):
    username = f'throttle-{uuid.uuid4().hex[:8]}'
    h = login_as(username)
    child = client.post('/children', json={'name': 'Tia', 'grade': '2'}, headers=h).json()
    set_pin(client, h)
    enter(client, h, child['id'])
    _fail_five_times(client, h)
    _unlock(username)

    r = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=h)
    assert r.status_code == 429
    assert r.json()['detail']['error'] == 'Too many attempts. Please wait before trying again.'
    retry_after = r.json()['detail']['retry_after']
    assert 0 < retry_after <= 3600
    assert r.headers['Retry-After'] == str(retry_after)


def test_address_throttle_returns_retry_after(client, headers, curriculum):
    set_pin(client, headers)
    enter(client, headers, curriculum['child_id'])
    # TestClient requests come from the "testclient" host
    for _ in range(10):
        services.pin_rate_limiter.hit('kids-mode-ip-attempts:testclient', 3600)

    r = client.post('/kids-mode/exit', json={'pin': '1234'}, headers=headers)
    assert r.status_code == 429
    assert r.json()['detail']['error'] == 'Too many attempts from this location. Please wait 60 minutes.'
    assert r.headers['Retry-After'] == str(r.json()['detail']['retry_after'])
    assert client.get('/kids-mode/status', headers=headers).json()['kids_mode_active'] is True


def test_https_requests_get_hsts_in_kids_mode(curriculum, headers):
    secure = TestClient(app, base_url='https://testserver')
    set_pin(secure, headers)
    enter(secure, headers, curriculum['child_id'])
    r = secure.get(f"/children/{curriculum['child_id']}/today", headers=headers)
    assert r.status_code == 200
    assert r.headers['Strict-Transport-Security'] == 'max-age=31536000; includeSubDomains'
    plain = TestClient(app)
    r = plain.get(f"/children/{curriculum['child_id']}/today", headers=headers)
    assert 'Strict-Transport-Security' not in r.headers
