import uuid
from enum import Enum

from sqlalchemy import CheckConstraint, Index

from subscription_sync.extensions import db
from subscription_sync.utils.timeutils import utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UserSubscription(db.Model):
    """
    Authoritative subscription record: at most one row per user.

    The row is created by reconciliation once Stripe confirms payment and is
    never deleted; cancellation and expiry are status changes.
    """

    __tablename__ = "user_subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    plan_id = db.Column(
        db.String(36),
        db.ForeignKey("subscription_plans.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.INACTIVE.value)

    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(255), nullable=True, index=True)

    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = db.relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'cancelled', 'expired')",
            name="valid_user_subscription_status",
        ),
        Index("idx_user_subscription_status_expiry", "status", "expires_at"),
    )

    @classmethod
    def find_by_user(cls, user_id):
        return cls.query.filter_by(user_id=user_id).first()

    @classmethod
    def find_by_customer(cls, customer_id):
        if not customer_id:
            return None
        return cls.query.filter_by(stripe_customer_id=customer_id).first()

    @classmethod
    def update_by_user(cls, user_id, values):
        """Update the user's row in place, keyed by user id. Returns the row count."""
        values = dict(values, updated_at=utcnow())
        return cls.query.filter_by(user_id=user_id).update(values, synchronize_session=False)

    def is_expired(self, now=None):
        if self.status == SubscriptionStatus.EXPIRED.value:
            return True
        return self.expires_at is not None and self.expires_at < (now or utcnow())

    def is_lapsed(self, now=None):
        """Still marked active although its expiry has passed."""
        return (
            self.status == SubscriptionStatus.ACTIVE.value
            and self.expires_at is not None
            and self.expires_at < (now or utcnow())
        )

    def days_until_expiry(self, now=None):
        if not self.expires_at:
            return None
        return max((self.expires_at - (now or utcnow())).days, 0)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "plan_name": self.plan.name if self.plan else None,
            "status": self.status,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "days_until_expiry": self.days_until_expiry(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<UserSubscription user={self.user_id} status={self.status}>"
