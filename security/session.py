import hashlib
import secrets
from datetime import datetime, timedelta
from flask import request, current_app, has_request_context

from models import db
from models.session import Session

# skip the last_seen write when the previous touch is this recent
TOUCH_INTERVAL_SECONDS = 60


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(user_id: int) -> str:
    """
    Store a session for ``user_id`` and return the raw cookie token.

    Sessions are normally opened by the auth service that shares this
    database; this is its write path and the one the test-suite uses.
    """
    raw_token = secrets.token_urlsafe(32)
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 28800)

    row = Session(
        user_id=user_id,
        token_hash=hash_token(raw_token),
        expires_at=datetime.utcnow() + timedelta(seconds=lifetime),
    )
    if has_request_context():
        row.ip = request.headers.get("X-Forwarded-For", request.remote_addr)
        row.user_agent = (request.headers.get("User-Agent") or "")[:255] or None

    db.session.add(row)
    db.session.commit()
    return raw_token


def get_session_from_request():
    """The live Session behind the request's auth cookie, or None."""
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "motorent_session")
    raw_token = request.cookies.get(cookie_name)
    if not raw_token:
        return None

    sess = Session.query.filter_by(token_hash=hash_token(raw_token)).first()
    now = datetime.utcnow()
    if sess is None or not sess.is_live(now, current_app.config.get("IDLE_TIMEOUT_SECONDS", 1200)):
        return None

    last_seen = sess.last_seen_at or sess.created_at
    if (now - last_seen).total_seconds() >= TOUCH_INTERVAL_SECONDS:
        sess.last_seen_at = now
        db.session.commit()
    return sess
