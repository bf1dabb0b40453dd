import uuid

from sqlalchemy import CheckConstraint

from subscription_sync.extensions import db
from subscription_sync.utils.timeutils import utcnow


class StripeConfig(db.Model):
    """
    Stripe credential set. Exactly one row is expected to be active; the
    active row always wins over credentials found in the environment.
    """

    __tablename__ = "stripe_configs"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    secret_key = db.Column(db.String(255), nullable=True)
    publishable_key = db.Column(db.String(255), nullable=True)
    webhook_secret = db.Column(db.String(255), nullable=True)
    environment = db.Column(db.String(10), nullable=False, default="test")
    default_product_id = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("environment IN ('test', 'live')", name="valid_stripe_environment"),
    )

    @classmethod
    def get_active(cls):
        return (
            cls.query.filter_by(is_active=True)
            .order_by(cls.updated_at.desc())
            .first()
        )

    @classmethod
    def has_any(cls):
        return db.session.query(cls.id).first() is not None

    def to_dict(self):
        """Safe representation; secrets are reported as present/absent only."""
        return {
            "id": self.id,
            "environment": self.environment,
            "is_active": self.is_active,
            "default_product_id": self.default_product_id,
            "has_secret_key": bool(self.secret_key),
            "has_publishable_key": bool(self.publishable_key),
            "has_webhook_secret": bool(self.webhook_secret),
        }
