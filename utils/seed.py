import logging

from models import db
from models.user import Role
from utils.roles import DEFAULT_ROLES

logger = logging.getLogger(__name__)


def seed_roles():
    """Create any missing role rows; returns the names added."""
    existing = set(db.session.scalars(db.select(Role.name)).all())
    missing = [name for name in DEFAULT_ROLES if name not in existing]
    for name in missing:
        db.session.add(Role(name=name))
    if missing:
        db.session.commit()
        logger.info("Seeded roles: %s", ", ".join(missing))
    return missing
