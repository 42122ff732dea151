"""
Authentication Routes

Provides:
- /auth/login
- /auth/logout
- /auth/seed-admin (first system bootstrap)
"""

from flask import (
    Blueprint,
    render_template,
    redirect,
    url_for,
    flash,
    request,
)
from flask_login import (
    login_user,
    logout_user,
    login_required,
    current_user,
)

from ...extensions import db
from ...models import ROLE_ADMIN, User
from ...utils import safe_next_url


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

HOME_ENDPOINT = "orders.list_orders"
HOME_VALUES = {"kind_key": "purchase-orders"}


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["GET", "POST"])
def login():
    """Authenticate a user. Only active users may log in."""

    if current_user.is_authenticated:
        return redirect(url_for(HOME_ENDPOINT, **HOME_VALUES))

    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")

        user = User.query.filter_by(username=username).first()

        if not user or not user.check_password(password):
            flash("Usuario o contraseña incorrectos.", "danger")
            return render_template("auth/login.html"), 401

        if not user.is_active:
            flash("La cuenta está inactiva.", "danger")
            return render_template("auth/login.html"), 403

        login_user(user)
        flash("¡Bienvenido!", "success")

        return redirect(safe_next_url(request.args.get("next"), HOME_ENDPOINT, **HOME_VALUES))

    return render_template("auth/login.html")


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["GET", "POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    flash("Sesión cerrada.", "info")
    return redirect(url_for("auth.login"))


# ============================================================
# SEED FIRST ADMIN (BOOTSTRAP)
# ============================================================

@auth_bp.route("/seed-admin", methods=["GET", "POST"])
def seed_admin():
    """Bootstrap the FIRST admin. Blocked as soon as any user exists."""

    if User.query.count() > 0:
        flash("Ya existe un usuario en el sistema.", "warning")
        return redirect(url_for("auth.login"))

    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")

        if not username or not password:
            flash("Indique usuario y contraseña.", "danger")
            return render_template("auth/seed_admin.html")

        user = User(username=username, role=ROLE_ADMIN, is_active=True)
        user.set_password(password)

        db.session.add(user)
        db.session.commit()

        flash("Administrador creado. Inicie sesión.", "success")
        return redirect(url_for("auth.login"))

    return render_template("auth/seed_admin.html")
