import logging
import time
from datetime import datetime, timezone

import jwt
from flask import Flask, jsonify, g
from werkzeug.security import generate_password_hash, check_password_hash

from . import config
from .errors import ServiceError
from .security import generate_token, generate_refresh_token, decode_token, protect
from .web import init_app, json_body

logger = logging.getLogger(__name__)

app = Flask(__name__)
init_app(app)

# Mock identity provider users. Passwords: password123, password124, ...
MOCK_USERS = {
    "student123": {
        "id": "std_001",
        "username": "student123",
        "password": generate_password_hash("password123"),
        "role": "STUDENT",
        "profile": {
            "name": "Kasun Perera",
            "school": "Royal College",
            "grade": "10A",
            "email": "kasun.perera@student.royal.lk",
            "dietary_restrictions": ["vegetarian"],
            "subsidy_eligible": True,
        },
    },
    "student124": {
        "id": "std_002",
        "username": "student124",
        "password": generate_password_hash("password124"),
        "role": "STUDENT",
        "profile": {
            "name": "Nimal Silva",
            "school": "Royal College",
            "grade": "9B",
            "email": "nimal.silva@student.royal.lk",
            "dietary_restrictions": [],
            "subsidy_eligible": False,
        },
    },
    "parent456": {
        "id": "par_001",
        "username": "parent456",
        "password": generate_password_hash("password456"),
        "role": "PARENT",
        "profile": {
            "name": "Nimali Perera",
            "email": "nimali.perera@parent.royal.lk",
            "children": ["std_001"],
            "phone": "+94771234567",
        },
    },
    "staff789": {
        "id": "staff_001",
        "username": "staff789",
        "password": generate_password_hash("password789"),
        "role": "SCHOOL_STAFF",
        "profile": {
            "name": "Sunil Fernando",
            "email": "sunil.fernando@staff.royal.lk",
            "role": "canteen_manager",
            "school": "Royal College",
        },
    },
    "admin000": {
        "id": "admin_001",
        "username": "admin000",
        "password": generate_password_hash("password000"),
        "role": "ADMIN",
        "profile": {
            "name": "Chamari Jayasinghe",
            "email": "admin@nutriconnect.lk",
        },
    },
}

BASE_PERMISSIONS = ["read:profile", "update:profile"]
ROLE_PERMISSIONS = {
    "STUDENT": ["read:menu", "create:order", "read:orders", "read:nutrition"],
    "PARENT": ["read:menu", "create:order", "read:orders", "read:children", "read:nutrition"],
    "SCHOOL_STAFF": ["manage:menu", "read:orders", "update:orders", "read:reports", "read:nutrition"],
    "ADMIN": ["manage:*", "read:*", "create:*", "update:*", "delete:*"],
}

PROFILE_FIELDS = (
    "name", "email", "school", "grade", "phone", "children",
    "dietary_restrictions", "subsidy_eligible",
)


def generate_permissions(role):
    return BASE_PERMISSIONS + ROLE_PERMISSIONS.get(role, [])


def public_user(user):
    profile = user["profile"]
    return {
        "id": user["id"],
        "username": user["username"],
        "role": user["role"],
        "profile": {field: profile.get(field) for field in PROFILE_FIELDS},
    }


def mock_oauth_token_exchange(username):
    """Pretend to trade credentials with the external OAuth2.0 provider."""
    logger.info("Initiating OAuth2.0 flow for user: %s", username)
    return {
        "provider": "mock_oauth_provider",
        "scope": "openid profile email",
        "issued_at": datetime.now(timezone.utc).isoformat(),
    }


@app.route("/api/auth/login", methods=["POST"])
def login():
    data = json_body()
    username = data.get("username")
    password = data.get("password")

    if not username or not password:
        missing = [name for name, value in (("username", username), ("password", password)) if not value]
        raise ServiceError(
            "Username and password are required", 400, "invalid_request",
            details={"missing_fields": missing},
        )
    if not isinstance(username, str) or not isinstance(password, str):
        raise ServiceError("Username and password must be strings", 400, "invalid_request")

    user = MOCK_USERS.get(username)
    if not user or not check_password_hash(user["password"], password):
        logger.info("Failed login for %s", username)
        raise ServiceError("Invalid username or password", 401, "invalid_credentials")

    oauth_metadata = mock_oauth_token_exchange(username)
    logger.info("Login successful for user: %s, role: %s", username, user["role"])

    return jsonify({
        "success": True,
        "token": generate_token(public_user(user)),
        "refresh_token": generate_refresh_token(user),
        "expires_in": config.JWT_EXPIRE_HOURS * 3600,
        "token_type": "Bearer",
        "user": public_user(user),
        "permissions": generate_permissions(user["role"]),
        "oauth_metadata": oauth_metadata,
    })


@app.route("/api/auth/me", methods=["GET"])
@protect
def me():
    user = g.user
    logger.info("User info requested for: %s", user["username"])
    return jsonify({
        "user": {
            "id": user["id"],
            "username": user["username"],
            "role": user["role"],
            "profile": user["profile"],
        },
        "permissions": generate_permissions(user["role"]),
        "token_info": {
            "issued_at": user["iat"],
            "expires_at": user["exp"],
            "time_remaining": user["exp"] - int(time.time()),
        },
    })


@app.route("/api/auth/refresh", methods=["POST"])
def refresh():
    refresh_token = json_body().get("refresh_token")
    if not refresh_token or not isinstance(refresh_token, str):
        raise ServiceError("Refresh token is required", 400, "invalid_request")

    try:
        claims = decode_token(refresh_token, token_type="refresh")
    except jwt.InvalidTokenError:
        raise ServiceError("Invalid refresh token", 401, "invalid_grant")

    user = MOCK_USERS.get(claims.get("username"))
    if not user or user["id"] != claims.get("sub"):
        raise ServiceError("Refresh token not found or expired", 401, "invalid_grant")

    logger.info("Token refreshed for user: %s", user["username"])
    return jsonify({
        "success": True,
        "token": generate_token(public_user(user)),
        "refresh_token": generate_refresh_token(user),
        "expires_in": config.JWT_EXPIRE_HOURS * 3600,
        "token_type": "Bearer",
    })


@app.route("/api/auth/logout", methods=["POST"])
@protect
def logout():
    # nothing to revoke with the mock provider
    logger.info("Logging out user: %s", g.user["username"])
    return jsonify({"success": True, "message": "Logout successful"})


if __name__ == "__main__":
    config.configure_logging()
    app.run(port=config.AUTH_PORT, debug=True)
