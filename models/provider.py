from datetime import datetime
from models.db import db

class Provider(db.Model):
    __tablename__ = "providers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    name = db.Column(db.String(120), nullable=False)
    service = db.Column(db.String(120), nullable=False, default="General Service")  # headline category
    location = db.Column(db.String(160), nullable=False, default="Unknown")
    certifications = db.Column(db.JSON, nullable=False, default=list)

    # derived: mean of all review ratings, recomputed on every review
    rating = db.Column(db.Float, nullable=False, default=0)

    # union of all services' open slots: [{"date": "YYYY-MM-DD", "slots": [...]}]
    availability = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship("User", back_populates="provider")
    services = db.relationship(
        "Service",
        back_populates="provider",
        cascade="all, delete-orphan",
        order_by="Service.id",
    )
    reviews = db.relationship("Review", back_populates="provider", order_by="Review.id")

    def to_dict(self, detail: bool = False):
        out = {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "service": self.service,
            "location": self.location,
            "certifications": list(self.certifications or []),
            "rating": self.rating,
            "review_count": len(self.reviews),
            "availability": self.availability or [],
        }
        if detail:
            out["services"] = [s.to_dict() for s in self.services]
            out["reviews"] = [r.to_dict() for r in self.reviews]
        return out
