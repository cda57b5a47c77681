from flask import Blueprint, request, jsonify, g

from models import db
from models.user import User, Role
from models.provider import Provider
from security.password import hash_password, verify_password
from security.session import create_session, revoke_session, set_session_cookie, cookie_name
from security.csrf import issue_csrf_token
from security.password_policy import validate_password
from utils.audit import log_event
from utils.auth_context import login_required
from utils.seed import USER, PROVIDER


auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

SIGNUP_ROLES = {"user": USER, "provider": PROVIDER}


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


@auth_bp.post("/register")
def register():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    role_key = (data.get("role") or "user").strip().lower()

    if not name or len(name) > 120:
        return jsonify(error="Invalid name"), 400
    if not _is_valid_email(email):
        return jsonify(error="Invalid email"), 400
    if role_key not in SIGNUP_ROLES:
        return jsonify(error="role must be 'user' or 'provider'"), 400
    valid, errors = validate_password(password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return jsonify(error="User already exists"), 409

    user = User(name=name, email=email, password_hash=hash_password(password))
    db.session.add(user)
    db.session.flush()

    role = Role.query.filter_by(name=SIGNUP_ROLES[role_key]).first()
    if role:
        user.roles.append(role)

    if role_key == "provider":
        # empty profile; filled in through PUT /providers/profile and /services
        db.session.add(Provider(user_id=user.id, name=name, availability=[], certifications=[]))

    db.session.commit()
    log_event("REGISTER_SUCCESS", user_id=user.id, metadata={"role": role_key})

    return jsonify(message="Registered successfully", id=user.id), 201


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(password, user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return jsonify(error="Invalid credentials"), 401

    raw_token = create_session(user.id)

    resp = jsonify(message="Login OK", id=user.id, roles=user.role_names)
    set_session_cookie(resp, raw_token)
    resp = issue_csrf_token(resp)

    log_event("LOGIN_SUCCESS", user_id=user.id)
    return resp, 200


@auth_bp.get("/me")
@login_required
def me():
    provider = Provider.query.filter_by(user_id=g.user.id).first()
    return jsonify(
        id=g.user.id,
        name=g.user.name,
        email=g.user.email,
        roles=g.user.role_names,
        provider_id=provider.id if provider else None,
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    name = cookie_name()
    revoke_session(request.cookies.get(name))
    log_event("LOGOUT", user_id=g.user.id)

    resp = jsonify(message="Logged out")
    resp.delete_cookie(name, path="/")
    return resp, 200
