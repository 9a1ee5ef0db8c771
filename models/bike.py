from datetime import datetime
from models.db import db

# availability_status values
AVAILABLE = "Available"
RENTED = "Rented"
MAINTENANCE = "Maintenance"
UNAVAILABLE = "Unavailable"

BIKE_STATUSES = (AVAILABLE, RENTED, MAINTENANCE, UNAVAILABLE)

# statuses a vendor sets by hand; the booking projection never overrides them
VENDOR_HELD_STATUSES = (MAINTENANCE, UNAVAILABLE)

class Bike(db.Model):
    __tablename__ = "bikes"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(100), nullable=False)
    brand = db.Column(db.String(80), nullable=True)
    model = db.Column(db.String(80), nullable=True)

    daily_rate = db.Column(db.Numeric(12, 2), nullable=False)
    security_deposit = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_available = db.Column(db.Boolean, default=True, nullable=False)
    availability_status = db.Column(db.String(20), nullable=False, default=AVAILABLE)
    is_active = db.Column(db.Boolean, default=True, nullable=False)  # false once retired by its vendor

    # bumped on every booking write for this bike; serialises check-then-insert
    booking_version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "name": self.name,
            "brand": self.brand,
            "model": self.model,
            "daily_rate": str(self.daily_rate),
            "security_deposit": str(self.security_deposit),
            "is_available": self.is_available,
            "availability_status": self.availability_status,
        }
