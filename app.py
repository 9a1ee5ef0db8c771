import logging

import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate
from sqlalchemy import inspect

from config import Config
from routes import health_bp, bike_bp, booking_bp, payments_bp, webhook_bp

from models import db
from models.user import User, Role
from services.bike_status import refresh_all
from services.errors import BookingError
from utils.roles import DEFAULT_ROLES
from utils.seed import seed_roles
from utils.auth_context import load_current_user
from utils.payment_gateway import init_gateway
from security.csrf import require_csrf

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(bike_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Payment gateway client
    init_gateway(app)

    with app.app_context():
        if app.config.get("AUTO_CREATE_TABLES"):
            db.create_all()
        # Seed default roles at startup (safe & idempotent); skipped before the first upgrade
        if inspect(db.engine).has_table("roles"):
            seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    CSRF_EXEMPT_PATHS = {
        "/health",
        "/csrf",
        "/webhooks/stripe",  # authenticated by its signature
    }

    @app.before_request
    def _csrf_protect():
        if not app.config.get("CSRF_ENABLED", True):
            return None
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                failure = require_csrf()
                if failure:
                    return failure

    @app.errorhandler(BookingError)
    def _booking_error(err):
        db.session.rollback()
        if err.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, err.message)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.path, err.code, err.message)
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

def register_cli(app):
    @app.cli.command("refresh-bike-status")
    def refresh_bike_status_cmd():
        """Recompute every bike's availability_status from today's bookings."""
        changed = refresh_all()
        click.echo(f"{changed} bike(s) updated")

    @app.cli.command("grant-role")
    @click.argument("email")
    @click.argument("role")
    def grant_role(email, role):
        """Give a user CUSTOMER, VENDOR or ADMIN by email (bootstrap)."""
        role_name = role.strip().upper()
        if role_name not in DEFAULT_ROLES:
            raise click.BadParameter(f"role must be one of {', '.join(DEFAULT_ROLES)}")

        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        role_row = Role.query.filter_by(name=role_name).first()
        if not role_row:
            role_row = Role(name=role_name)
            db.session.add(role_row)
            db.session.commit()

        if role_row not in user.roles:
            user.roles.append(role_row)
            db.session.commit()

        click.echo(f"{user.email} granted {role_name}")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
