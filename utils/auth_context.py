from functools import wraps
from flask import g, jsonify
from security.session import get_session_from_request
from models.user import User
from models.provider import Provider
from utils.seed import PROVIDER

def load_current_user():
    """Populates g.user / g.session from the auth cookie (None when anonymous)."""
    g.user = None
    g.session = None
    sess = get_session_from_request()
    if not sess:
        return
    g.session = sess
    g.user = User.query.get(sess.user_id)

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper

def provider_required(fn):
    """
    Like login_required, but also requires the PROVIDER role and an existing
    provider profile, exposed as g.provider.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user = getattr(g, "user", None)
        if user is None:
            return jsonify(error="Authentication required"), 401
        if PROVIDER not in user.role_names:
            return jsonify(error="Access denied: providers only"), 403
        provider = Provider.query.filter_by(user_id=user.id).first()
        if not provider:
            return jsonify(error="Provider profile not found"), 404
        g.provider = provider
        return fn(*args, **kwargs)
    return wrapper
