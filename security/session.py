"""
Bearer/cookie sessions.

Tokens are minted by the ``issue-session`` CLI command (there is no login
endpoint) and presented either as ``Authorization: Bearer <token>`` or in
the ``AUTH_COOKIE_NAME`` cookie. Only a SHA-256 digest is persisted.
"""

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from flask import current_app, has_request_context, request

from models import db
from models.session import Session
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _client_hints():
    if not has_request_context():
        return None, None
    ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    return ip, (request.headers.get("User-Agent") or "")[:255]


def create_session(user_id: int) -> str:
    """Persist a new session for ``user_id`` and return the raw token."""
    raw_token = secrets.token_urlsafe(32)
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 8 * 60 * 60)
    ip, user_agent = _client_hints()

    db.session.add(Session(
        user_id=user_id,
        token_hash=hash_token(raw_token),
        expires_at=utcnow() + timedelta(seconds=lifetime),
        ip=ip,
        user_agent=user_agent,
    ))
    db.session.commit()
    return raw_token


def token_from_request() -> Optional[str]:
    scheme, _, value = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return request.cookies.get(current_app.config.get("AUTH_COOKIE_NAME", "mentorslot_session"))


def get_session_from_request() -> Optional[Session]:
    raw_token = token_from_request()
    if not raw_token:
        return None

    sess = Session.query.filter_by(token_hash=hash_token(raw_token)).first()
    now = utcnow()
    if sess is None or not sess.is_live(now, current_app.config.get("IDLE_TIMEOUT_SECONDS", 1200)):
        return None

    sess.last_seen_at = now
    db.session.commit()
    return sess


def revoke_all_sessions(user_id: int) -> int:
    revoked = (
        Session.query
        .filter(Session.user_id == user_id, Session.revoked.is_(False))
        .update({Session.revoked: True}, synchronize_session=False)
    )
    db.session.commit()
    logger.info("Revoked %d session(s) for user %s", revoked, user_id)
    return revoked
