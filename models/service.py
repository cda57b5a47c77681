from datetime import datetime
from models.db import db

class Service(db.Model):
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("providers.id"), nullable=False, index=True)

    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=False)
    price = db.Column(db.Integer, nullable=False, default=0)  # whole currency units (e.g. INR)
    duration = db.Column(db.String(40), nullable=False)        # free text, e.g. "45 min"

    # slots offered under this service: [{"date": "YYYY-MM-DD", "slots": [...]}]
    availability = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    provider = db.relationship("Provider", back_populates="services")

    def to_dict(self):
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "duration": self.duration,
            "availability": self.availability or [],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
