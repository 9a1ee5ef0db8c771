from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import g, jsonify, request
from security.session import get_session_from_request
from models import db
from models.user import User
from utils.roles import ACTING_ROLE_HEADER, primary_role

# actor roles as the booking core sees them
ROLE_CUSTOMER = "customer"
ROLE_VENDOR = "vendor"
ROLE_ADMIN = "admin"
ROLE_SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    id: Optional[int]
    role: str

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN


# payment confirmations are applied on behalf of nobody in particular
SYSTEM_ACTOR = Actor(id=None, role=ROLE_SYSTEM)


def actor_for(user, requested_role=None) -> Optional[Actor]:
    if user is None:
        return None
    role = primary_role(user.roles, requested_role)
    if role is None:
        return None
    return Actor(id=user.id, role=role)


def load_current_user():
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        g.actor = None
        return
    g.session = sess
    g.user = db.session.get(User, sess.user_id)
    g.actor = actor_for(g.user, request.headers.get(ACTING_ROLE_HEADER))

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        if getattr(g, "actor", None) is None:
            return jsonify(error="Forbidden"), 403
        return fn(*args, **kwargs)
    return wrapper
