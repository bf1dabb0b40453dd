from subscription_sync.extensions import db
from subscription_sync.utils.timeutils import utcnow


class AuditLog(db.Model):
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(100), nullable=False)
    resource_type = db.Column(db.String(100), nullable=False)
    resource_id = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.Index("idx_audit_resource", "resource_type", "resource_id"),
        db.Index("idx_audit_created_at", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "user_id": self.user_id,
            "details": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
