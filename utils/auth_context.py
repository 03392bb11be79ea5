from flask import g
from sqlalchemy.orm import selectinload

from models.user import User
from security.session import get_session_from_request


def load_current_user():
    """Populate ``g.session`` and ``g.user`` (both None for anonymous calls)."""
    sess = get_session_from_request()
    g.session = sess
    g.user = None
    if sess is not None:
        g.user = (
            User.query
            .options(selectinload(User.roles))
            .filter(User.id == sess.user_id)
            .first()
        )
