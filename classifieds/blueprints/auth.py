"""Auth blueprint — /auth/*

JSON session login for the payment API: login, logout, current user.
Accepts either a JSON body or form fields.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from classifieds.extensions import limiter
from classifieds.models.user import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "is_admin": bool(user.is_admin),
    }


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("10 per minute")
def login():
    """Email + password login. Returns the user and a CSRF token for
    subsequent state-changing requests."""
    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        logger.info(f"Failed login for {email}")
        return jsonify({"error": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=bool(data.get("remember")))
    return jsonify({"user": _user_payload(user), "csrf_token": generate_csrf()})


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"logged_out": True})


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _user_payload(current_user), "csrf_token": generate_csrf()})
