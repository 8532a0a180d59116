import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

import jwt
from flask import request, g

from . import config
from .errors import ServiceError

logger = logging.getLogger(__name__)


def generate_token(user, expires_in=None):
    """Sign an access token carrying the user's id, role and profile."""
    now = datetime.now(timezone.utc)
    expires_in = expires_in or timedelta(hours=config.JWT_EXPIRE_HOURS)
    payload = {
        "sub": user["id"],
        "username": user["username"],
        "role": user["role"],
        "profile": user.get("profile", {}),
        "type": "access",
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def generate_refresh_token(user):
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user["id"],
        "username": user["username"],
        "type": "refresh",
        "iat": now,
        "exp": now + timedelta(days=config.REFRESH_EXPIRE_DAYS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token, token_type="access"):
    payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    if payload.get("type") != token_type:
        raise jwt.InvalidTokenError(f"expected a {token_type} token")
    return payload


def bearer_token():
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def protect(f):
    """Require a valid bearer token; the decoded claims land in ``g.user``."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = bearer_token()
        if not token:
            raise ServiceError("Access token required", 401, "unauthorized")

        try:
            claims = decode_token(token)
        except jwt.InvalidTokenError as e:
            logger.info("Rejected token: %s", e)
            raise ServiceError("Invalid or expired token", 401, "invalid_token")

        g.user = {
            "id": claims["sub"],
            "username": claims.get("username"),
            "role": claims.get("role"),
            "profile": claims.get("profile", {}),
            "iat": claims.get("iat"),
            "exp": claims.get("exp"),
        }
        g.token = token
        return f(*args, **kwargs)
    return decorated_function


def require_role(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = getattr(g, "user", None)
            if not user or user["role"] not in roles:
                raise ServiceError("Insufficient permissions", 403, "forbidden")
            return f(*args, **kwargs)
        return decorated_function
    return decorator
