from sqlalchemy.exc import IntegrityError

from subscription_sync.extensions import db
from subscription_sync.utils.timeutils import utcnow


class ProcessedStripeEvent(db.Model):
    """
    Stripe event ids that were handled successfully.

    Stripe delivers at least once; the unique constraint on ``event_id`` is
    what makes redelivery a no-op.
    """

    __tablename__ = "processed_stripe_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    event_type = db.Column(db.String(100), nullable=False)
    livemode = db.Column(db.Boolean, nullable=True)
    processed_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    @classmethod
    def is_processed(cls, event_id):
        return db.session.query(cls.id).filter_by(event_id=event_id).first() is not None

    @classmethod
    def mark_processed(cls, event_id, event_type, livemode=None):
        """
        Record the event id. Returns False when another delivery already
        recorded it.
        """
        db.session.add(cls(event_id=event_id, event_type=event_type, livemode=livemode))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    def __repr__(self):
        return f"<ProcessedStripeEvent {self.event_id} {self.event_type}>"
