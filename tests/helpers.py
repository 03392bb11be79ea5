"""Shared constants and builders for the test suite."""

from datetime import date, datetime, time

from models import db
from models.user import Role, User

# fixed clock for service-level tests; slots on SLOT_DAY are > 48h ahead
NOW = datetime(2030, 1, 1, 10, 0)
SLOT_DAY = date(2030, 1, 5)


def at(hour, minute=0):
    return time(hour, minute)


def make_user(email, *role_names, **fields):
    user = User(email=email, full_name=email.split("@")[0], **fields)
    for name in role_names:
        user.roles.append(Role.query.filter_by(name=name).one())
    db.session.add(user)
    db.session.commit()
    return user
