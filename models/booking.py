from datetime import datetime
from models.db import db

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

PAYMENT_STATUSES = (PENDING, COMPLETED, FAILED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("providers.id"), nullable=False, index=True)

    # snapshot of the service at booking time; no FK so the service can be deleted
    service_id = db.Column(db.Integer, nullable=False, index=True)
    service_name = db.Column(db.String(120), nullable=False)
    service_price = db.Column(db.Integer, nullable=False)
    service_duration = db.Column(db.String(40), nullable=True)

    date = db.Column(db.String(10), nullable=False)
    slot = db.Column(db.String(40), nullable=False)

    payment_status = db.Column(db.String(20), nullable=False, default=PENDING, index=True)
    # payment_status values: pending, completed, failed

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)

    provider = db.relationship("Provider")

    __table_args__ = (
        db.Index("ix_bookings_provider_date_slot", "provider_id", "date", "slot"),
    )

    @property
    def is_final(self) -> bool:
        return self.payment_status in (COMPLETED, FAILED)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider_id": self.provider_id,
            "service": {
                "id": self.service_id,
                "name": self.service_name,
                "price": self.service_price,
                "duration": self.service_duration,
            },
            "date": self.date,
            "slot": self.slot,
            "payment_status": self.payment_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
