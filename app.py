import logging

from flask import Flask, jsonify
from flask_migrate import Migrate
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError

from config import Config, engine_options
from routes import health_bp, slots_bp, carts_bp, bookings_bp, notifications_bp

from models import db
from services.errors import EngineError, Unavailable
from utils.seed import get_role, seed_roles
from utils.auth_context import load_current_user

logger = logging.getLogger(__name__)


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)
    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options(app.config["SQLALCHEMY_DATABASE_URI"], app.config["DB_TIMEOUT_SECONDS"]),
    )

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(slots_bp)
    app.register_blueprint(carts_bp)
    app.register_blueprint(bookings_bp)
    app.register_blueprint(notifications_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Seed default roles once the schema exists (safe & idempotent)
    with app.app_context():
        if inspect(db.engine).has_table("roles"):
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(EngineError)
    def _engine_error(exc):
        db.session.rollback()
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(OperationalError)
    def _storage_error(exc):
        db.session.rollback()
        logger.error("Storage unavailable: %s", exc.orig if exc.orig is not None else exc)
        err = Unavailable("Storage is temporarily unavailable, please retry")
        return jsonify(err.to_dict()), err.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app

#-------------------------
import click
from models.user import User, Category
from security.session import create_session, revoke_all_sessions
from services import slot_store

def register_cli(app):
    @app.cli.command("make-user")
    @click.argument("email")
    @click.option("--role", "roles", multiple=True, default=["USER"], show_default=True,
                  help="USER, MENTOR or ADMIN; repeat for several.")
    @click.option("--full-name", default=None)
    @click.option("--price", type=int, default=None, help="Per-slot price override for a mentor.")
    @click.option("--category", "category_name", default=None, help="Category name for a mentor.")
    def make_user(email, roles, full_name, price, category_name):
        """Create a user (or add roles to an existing one)."""
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(email=email, full_name=full_name)
            db.session.add(user)

        if category_name:
            category = Category.query.filter_by(name=category_name).first()
            if not category:
                print(f"Category not found: {category_name}")
                db.session.rollback()
                return
            user.category = category
        if price is not None:
            user.price_per_slot = price

        for name in roles:
            role = get_role(name)
            if not role:
                print(f"Unknown role: {name}")
                db.session.rollback()
                return
            if role not in user.roles:
                user.roles.append(role)

        db.session.commit()
        print(f"{user.email} (id={user.id}) roles={sorted(user.role_names)}")

    @app.cli.command("create-category")
    @click.argument("name")
    @click.argument("price", type=int)
    def create_category(name, price):
        """Create a mentor category or update its per-slot price."""
        category = Category.query.filter_by(name=name).first()
        if category:
            category.price_per_slot = price
        else:
            category = Category(name=name, price_per_slot=price)
            db.session.add(category)
        db.session.commit()
        print(f"Category {category.name} (id={category.id}) price={category.price_per_slot}")

    @app.cli.command("issue-session")
    @click.argument("email")
    def issue_session(email):
        """Print a bearer token for a user (bootstrap / local testing)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return
        print(create_session(user.id))

    @app.cli.command("revoke-sessions")
    @click.argument("email")
    def revoke_sessions(email):
        """Revoke every active session of a user."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return
        print(f"Revoked {revoke_all_sessions(user.id)} session(s) for {user.email}")

    @app.cli.command("sweep-holds")
    def sweep_holds():
        """Release expired cart holds."""
        result = slot_store.expiry_sweep()
        print(f"Released {len(result.released_slot_ids)} slot(s), pruned {result.pruned_items} cart item(s)")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
