import pytest

from app import create_app
from models import db
from models.user import Category
from security.session import create_session
from tests.helpers import make_user
from utils.seed import seed_roles


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///" + str(tmp_path / "test.db"),
        "SMTP_HOST": None,
        "LOG_LEVEL": "WARNING",
    })
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def category(app):
    row = Category(name="Data Science", price_per_slot=500)
    db.session.add(row)
    db.session.commit()
    return row


@pytest.fixture
def mentor(category):
    """Priced through its category."""
    return make_user("mentor@example.com", "MENTOR", category_id=category.id)


@pytest.fixture
def pricey_mentor(category):
    """Own override beats the category price."""
    return make_user("pricey@example.com", "MENTOR", category_id=category.id, price_per_slot=800)


@pytest.fixture
def student(app):
    return make_user("student@example.com", "USER")


@pytest.fixture
def other_student(app):
    return make_user("other@example.com", "USER")


@pytest.fixture
def admin(app):
    return make_user("admin@example.com", "ADMIN")


@pytest.fixture
def auth_header():
    def _header(user):
        return {"Authorization": f"Bearer {create_session(user.id)}"}
    return _header
