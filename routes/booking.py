from flask import Blueprint, request, jsonify, g

from marketplace.reservation import create_booking as reserve_slot
from models.booking import Booking, PAYMENT_STATUSES
from security.rbac import require_roles
from utils.auth_context import login_required
from utils.parsing import as_id

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


# ---------- USERS: book a slot (checked now, consumed on payment) ----------
@booking_bp.post("")
@login_required
def create_booking():
    data = request.get_json(silent=True) or {}
    booking = reserve_slot(
        user_id=g.user.id,
        provider_id=as_id(data.get("provider_id"), "provider_id"),
        service_id=as_id(data.get("service_id"), "service_id"),
        date=data.get("date"),
        slot=data.get("slot"),
    )
    return jsonify(booking.to_dict()), 201


# ---------- USERS: view my bookings ----------
@booking_bp.get("/me")
@login_required
def my_bookings():
    status = request.args.get("status")  # pending/completed/failed
    q = Booking.query.filter_by(user_id=g.user.id)
    if status:
        if status not in PAYMENT_STATUSES:
            return jsonify(error="Invalid status"), 400
        q = q.filter_by(payment_status=status)

    rows = q.order_by(Booking.created_at.desc(), Booking.id.desc()).all()
    out = []
    for b in rows:
        item = b.to_dict()
        item["provider"] = {"id": b.provider.id, "name": b.provider.name} if b.provider else None
        out.append(item)
    return jsonify(out), 200


# ---------- ADMIN: list all bookings ----------
@booking_bp.get("")
@require_roles("ADMIN")
def list_all_bookings():
    status = request.args.get("status")
    q = Booking.query
    if status:
        q = q.filter_by(payment_status=status)

    rows = q.order_by(Booking.created_at.desc()).limit(200).all()
    return jsonify([b.to_dict() for b in rows]), 200
