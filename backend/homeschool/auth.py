"""Authentication helpers and FastAPI security dependencies.

`get_current_user` validates the bearer token (signature, expiry and the
user's token version) and returns the `User`. `enforce_kids_mode` runs
before every route and refuses parent-only requests while the caller's
kids mode is active.
"""

from typing import Dict, Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from sqlmodel import Session

from .database import engine
from .services import JWT_SECRET, JWT_ALGORITHM, KidsModeService, client_info
from .utils import kids_mode as policy
from . import repositories

bearer_scheme = HTTPBearer()
optional_bearer = HTTPBearer(auto_error=False)


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user(request: Request, credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)):
    """FastAPI dependency that returns the authenticated user.

    Tokens issued before the user's token version was bumped are
    rejected as revoked. The token id is kept on `request.state` for
    kids mode fingerprinting.
    """
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    with Session(engine) as session:
        user = repositories.UserRepository(session).get(user_id)
        if not user:
            raise HTTPException(status_code=401, detail='user not found')
        if payload.get('tv', 0) != user.token_version:
            raise HTTPException(status_code=401, detail='token revoked')
    request.state.token_id = payload.get('jti')
    return user


def request_client(request: Request) -> Dict:
    """User agent, client address and token id of the current request."""
    return client_info(
        request.headers.get('user-agent'),
        request.client.host if request.client else None,
        getattr(request.state, 'token_id', None),
    )


def _route_name(request: Request) -> Optional[str]:
    route = request.scope.get('route')
    return getattr(route, 'name', None)


def enforce_kids_mode(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Security(optional_bearer)):
    """Global dependency applying the kids mode route policy.

    Requests without a usable token pass through; the route's own
    authentication decides what happens to them.
    """
    request.state.kids_mode_active = False
    request.state.kids_mode_route = _route_name(request)
    if credentials is None:
        return
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        # reported as 401 by get_current_user
        return
    user_id = payload.get('user_id')
    if not user_id:
        return
    with Session(engine) as session:
        user = repositories.UserRepository(session).get(user_id)
        if user is None or payload.get('tv', 0) != user.token_version:
            return
        svc = KidsModeService(session)
        prefs = svc.active_state(user.id)
        if prefs is None:
            return
        request.state.kids_mode_active = True
        route_name = request.state.kids_mode_route
        if policy.is_route_allowed(request.url.path, route_name, request.method):
            return
        client = client_info(
            request.headers.get('user-agent'),
            request.client.host if request.client else None,
            payload.get('jti'),
        )
        body = svc.record_blocked(user.id, prefs, request.url.path, route_name, request.method, client)
    raise HTTPException(status_code=403, detail=body)
