"""
Sign-up, sign-in, sign-out and session lookup.

Tokens are HS256 JWTs carrying the user id and a session id (``jti``).
A token is only honoured while its session document exists, so signing
out revokes it before it expires.
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from config import JWT_ALGO, JWT_SECRET, TOKEN_TTL_DAYS
from database import SESSIONS, USERS, Backend, serialize_doc
from schemas import User

logger = logging.getLogger(__name__)


class AuthError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=TOKEN_TTL_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        logger.info("expired token presented")
        return None
    except jwt.InvalidTokenError:
        logger.info("invalid token presented")
        return None


def _public(user: dict) -> dict:
    u = serialize_doc(user)
    return {"id": u["id"], "name": u.get("name"), "email": u["email"], "is_admin": u.get("is_admin", False)}


def _open_session(backend: Backend, user: dict) -> dict:
    jti = uuid.uuid4().hex
    backend.create_document(SESSIONS, {"jti": jti, "user_id": str(user["_id"])})
    public = _public(user)
    token = create_token({"id": public["id"], "email": public["email"], "is_admin": public["is_admin"], "jti": jti})
    return {"token": token, "user": public}


def sign_up(backend: Backend, name: str, email: str, password: str, is_admin: bool = False) -> dict:
    email = email.lower()
    if backend.select_one(USERS, {"email": email}):
        raise AuthError("Email already registered")
    user = backend.create_document(USERS, User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_admin=is_admin,
    ))
    return _open_session(backend, user)


def sign_in(backend: Backend, email: str, password: str) -> dict:
    user = backend.select_one(USERS, {"email": email.lower()})
    if not user or user.get("password_hash") != hash_password(password):
        logger.info("failed sign-in for %s", email)
        raise AuthError("Invalid credentials")
    return _open_session(backend, user)


def sign_out(backend: Backend, token: str) -> bool:
    payload = decode_token(token)
    if not payload or not payload.get("jti"):
        return False
    return backend.delete(SESSIONS, {"jti": payload["jti"]}) > 0


def get_session(backend: Backend, token: str) -> Optional[dict]:
    """The signed-in user for a token, or None."""
    payload = decode_token(token)
    if not payload or not payload.get("jti"):
        return None
    if backend.select_one(SESSIONS, {"jti": payload["jti"]}) is None:
        return None
    user = backend.get(USERS, payload.get("id"))
    if user is None:
        return None
    return _public(user)
