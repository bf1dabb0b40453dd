import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint

from subscription_sync.extensions import db
from subscription_sync.utils.timeutils import utcnow


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=False, default=Decimal("0"))
    features = db.Column(db.JSON, nullable=True, default=list)

    # Stripe references, e.g. price_1Q... / prod_Q...
    stripe_price_id = db.Column(db.String(255), nullable=True)
    stripe_product_id = db.Column(db.String(255), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("price >= 0", name="non_negative_plan_price"),
    )

    @property
    def is_free(self):
        return (self.price or 0) <= 0 or (self.name or "").strip().lower() == "free"

    @classmethod
    def find_active(cls, plan_id):
        return cls.query.filter_by(id=plan_id, is_active=True).first()

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": str(self.price) if self.price is not None else None,
            "features": self.features or [],
            "stripe_price_id": self.stripe_price_id,
            "stripe_product_id": self.stripe_product_id,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<SubscriptionPlan {self.name} {self.price}>"
