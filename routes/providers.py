from flask import Blueprint, request, jsonify, g
from sqlalchemy import or_

from models import db
from models.provider import Provider
from utils.audit import log_event
from utils.auth_context import provider_required

provider_bp = Blueprint("providers", __name__, url_prefix="/providers")


@provider_bp.get("")
def list_providers():
    # optional filters: query (name or category), location
    name_query = (request.args.get("query") or "").strip()
    location_query = (request.args.get("location") or "").strip()

    q = Provider.query
    if location_query:
        q = q.filter(Provider.location.ilike(f"%{location_query}%"))
    if name_query:
        like = f"%{name_query}%"
        q = q.filter(or_(Provider.name.ilike(like), Provider.service.ilike(like)))

    rows = q.order_by(Provider.rating.desc(), Provider.id.asc()).limit(200).all()
    return jsonify([p.to_dict() for p in rows]), 200


@provider_bp.get("/<int:provider_id>")
def get_provider(provider_id: int):
    provider = Provider.query.get(provider_id)
    if not provider:
        return jsonify(error="Provider not found"), 404
    return jsonify(provider.to_dict(detail=True)), 200


@provider_bp.get("/profile")
@provider_required
def get_profile():
    return jsonify(g.provider.to_dict(detail=True)), 200


@provider_bp.put("/profile")
@provider_required
def update_profile():
    data = request.get_json(silent=True) or {}
    provider = g.provider

    for field, limit in (("name", 120), ("service", 120), ("location", 160)):
        value = data.get(field)
        if value is None:
            continue
        if not isinstance(value, str) or not value.strip() or len(value.strip()) > limit:
            return jsonify(error=f"Invalid {field}"), 400
        setattr(provider, field, value.strip())

    certifications = data.get("certifications")
    if certifications is not None:
        if not isinstance(certifications, list) or not all(isinstance(c, str) for c in certifications):
            return jsonify(error="certifications must be a list of strings"), 400
        provider.certifications = [c.strip() for c in certifications if c.strip()]

    db.session.commit()
    log_event("PROVIDER_PROFILE_UPDATE", user_id=g.user.id, entity="provider", entity_id=provider.id)
    return jsonify(provider.to_dict()), 200
