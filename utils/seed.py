from models import db
from models.user import Role

# USER is the student role
DEFAULT_ROLES = ("USER", "MENTOR", "ADMIN")


def seed_roles():
    """Create missing default roles. Idempotent; runs at startup."""
    have = {name for (name,) in db.session.query(Role.name)}
    missing = [Role(name=name) for name in DEFAULT_ROLES if name not in have]
    if missing:
        db.session.add_all(missing)
        db.session.commit()
    return len(missing)


def get_role(name: str):
    """Look up a default role by (case-insensitive) name; None if unknown."""
    name = name.strip().upper()
    if name not in DEFAULT_ROLES:
        return None
    return Role.query.filter_by(name=name).first()
