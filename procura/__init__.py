"""
procura/__init__.py

Flask application factory for Procura (quote requests, purchase orders, service orders).

- SQLAlchemy models, SQLite for dev, any SQLAlchemy URL in production.
- UI is never trusted; server-side access control is enforced.
- Order totals always come from procura.totals.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, redirect, url_for
from flask_login import current_user

from .extensions import csrf, db, login_manager, migrate
from .models import PAYMENT_TERMS, STATUS_LABELS, User
from .security import viewer_readonly_guard
from .totals import format_money
from .utils import status_badge_class


# -------------------------------------------------------------------
# NAVIGATION STRUCTURE (UI visibility only; security enforced in routes)
# -------------------------------------------------------------------
NAV_SECTIONS = [
    {
        "key": "orders",
        "label": "Órdenes",
        "items": [
            {"label": "Solicitudes de Cotización", "endpoint": "orders.list_orders",
             "values": {"kind_key": "quote-requests"}, "admin_only": False},
            {"label": "Órdenes de Compra", "endpoint": "orders.list_orders",
             "values": {"kind_key": "purchase-orders"}, "admin_only": False},
            {"label": "Órdenes de Servicio", "endpoint": "orders.list_orders",
             "values": {"kind_key": "service-orders"}, "admin_only": False},
        ],
    },
    {
        "key": "reports",
        "label": "Reportes",
        "items": [
            {"label": "Historial de Compras", "endpoint": "reports.purchase_history", "values": {}, "admin_only": False},
            {"label": "Historial de Precios", "endpoint": "reports.price_history", "values": {}, "admin_only": False},
            {"label": "Auditoría", "endpoint": "reports.audit_log", "values": {}, "admin_only": True},
        ],
    },
    {
        "key": "masterdata",
        "label": "Maestros",
        "items": [
            {"label": "Empresas", "endpoint": "masterdata.companies_list", "values": {}, "admin_only": True},
            {"label": "Proveedores", "endpoint": "masterdata.suppliers_list", "values": {}, "admin_only": True},
            {"label": "Materiales", "endpoint": "masterdata.materials_list", "values": {}, "admin_only": True},
        ],
    },
]


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("procura").setLevel(level)
    if not logging.getLogger().handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s [%(name)s] %(message)s")


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)

    login_manager.init_app(app)
    login_manager.login_view = "auth.login"
    login_manager.login_message_category = "info"

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        if not str(user_id).isdigit():
            return None
        return db.session.get(User, int(user_id))

    # ----------------------------------------------------------------------
    # GLOBAL SECURITY NET: Viewer read-only guard (server-side).
    # ----------------------------------------------------------------------
    @app.before_request
    def _viewer_guard_hook():
        return viewer_readonly_guard()

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.masterdata import masterdata_bp
    from .blueprints.orders import orders_bp
    from .blueprints.reports import reports_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(masterdata_bp)
    app.register_blueprint(reports_bp)

    # ----------------------------------------------------------------------
    # Template globals
    # ----------------------------------------------------------------------
    app.jinja_env.filters["money"] = format_money
    app.jinja_env.globals["status_badge_class"] = status_badge_class
    app.jinja_env.globals["status_labels"] = STATUS_LABELS
    app.jinja_env.globals["payment_terms_options"] = PAYMENT_TERMS

    @app.context_processor
    def inject_globals():
        """Navigation filtered by user (visibility only; routes enforce permissions)."""
        visible_sections = []
        if current_user.is_authenticated:
            for section in NAV_SECTIONS:
                items = [
                    item for item in section["items"]
                    if not item["admin_only"] or current_user.is_admin
                ]
                if items:
                    visible_sections.append({"key": section["key"], "label": section["label"], "items": items})
        return {"config": app.config, "nav_sections": visible_sections}

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Seed demo companies, suppliers and materials (idempotent)."""
        from .seed import seed_demo_data

        created = seed_demo_data()
        click.echo(f"Demo master data seeded ({created} new records).")

    @app.cli.command("create-admin")
    @click.argument("username")
    @click.password_option()
    def create_admin_command(username: str, password: str):
        """Create an admin user."""
        from .seed import create_user

        try:
            create_user(username, password, role="admin")
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"Admin '{username}' created.")

    # ----------------------------------------------------------------------
    # Home
    # ----------------------------------------------------------------------
    @app.route("/")
    def index():
        if current_user.is_authenticated:
            return redirect(url_for("orders.list_orders", kind_key="purchase-orders"))
        return redirect(url_for("auth.login"))

    return app
