from flask import Blueprint, request, jsonify, g

from marketplace.availability import normalize
from marketplace.reservation import rebuild_provider_availability
from models import db
from models.service import Service
from utils.audit import log_event
from utils.auth_context import provider_required
from utils.notifications import notify_service_changed

service_bp = Blueprint("services", __name__, url_prefix="/services")


def _parse_price(value):
    if isinstance(value, bool):
        return None
    try:
        price = int(value)
    except (TypeError, ValueError):
        return None
    return price if price >= 0 else None


def _owned_service(service_id: int):
    service = Service.query.get(service_id)
    if not service:
        return None, (jsonify(error="Service not found"), 404)
    if service.provider_id != g.provider.id:
        return None, (jsonify(error="Not authorized to modify this service"), 403)
    return service, None


@service_bp.post("")
@provider_required
def create_service():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    description = (data.get("description") or "").strip()
    duration = (str(data.get("duration") or "")).strip()
    price = _parse_price(data.get("price"))

    if not name or not description or not duration:
        return jsonify(error="name, description, price, duration are required"), 400
    if price is None:
        return jsonify(error="price must be a non-negative integer"), 400

    availability = normalize(data.get("availability"))

    service = Service(
        provider_id=g.provider.id,
        name=name,
        description=description,
        price=price,
        duration=duration,
        availability=availability,
    )
    db.session.add(service)
    db.session.flush()

    rebuild_provider_availability(g.provider)
    db.session.commit()

    snapshot = service.to_dict()
    log_event("SERVICE_CREATE", user_id=g.user.id, entity="service", entity_id=service.id)
    notify_service_changed(g.user, snapshot, "added")
    return jsonify(snapshot), 201


@service_bp.put("/<int:service_id>")
@provider_required
def update_service(service_id: int):
    service, failure = _owned_service(service_id)
    if failure:
        return failure

    data = request.get_json(silent=True) or {}
    availability = normalize(data.get("availability"))

    name = (data.get("name") or "").strip()
    description = (data.get("description") or "").strip()
    duration = (str(data.get("duration") or "")).strip()
    if name:
        service.name = name
    if description:
        service.description = description
    if duration:
        service.duration = duration
    if data.get("price") is not None:
        price = _parse_price(data.get("price"))
        if price is None:
            return jsonify(error="price must be a non-negative integer"), 400
        service.price = price

    service.availability = availability
    db.session.flush()

    rebuild_provider_availability(g.provider)
    db.session.commit()

    snapshot = service.to_dict()
    log_event("SERVICE_UPDATE", user_id=g.user.id, entity="service", entity_id=service.id)
    notify_service_changed(g.user, snapshot, "updated")
    return jsonify(snapshot), 200


@service_bp.delete("/<int:service_id>")
@provider_required
def delete_service(service_id: int):
    service, failure = _owned_service(service_id)
    if failure:
        return failure

    snapshot = service.to_dict()
    db.session.delete(service)
    db.session.flush()

    rebuild_provider_availability(g.provider)
    db.session.commit()

    log_event("SERVICE_DELETE", user_id=g.user.id, entity="service", entity_id=service_id,
              metadata={"name": snapshot["name"]})
    notify_service_changed(g.user, snapshot, "deleted")
    return jsonify(message="Service deleted successfully"), 200


@service_bp.get("/me")
@provider_required
def my_services():
    rows = Service.query.filter_by(provider_id=g.provider.id).order_by(Service.id.asc()).all()
    return jsonify([s.to_dict() for s in rows]), 200
