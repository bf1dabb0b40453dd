import logging

from sqlalchemy.exc import SQLAlchemyError

from subscription_sync.extensions import db
from subscription_sync.models import AuditLog

logger = logging.getLogger("audit")


def log_audit_event(action, resource_type, resource_id=None, user_id=None, details=None):
    """Write an audit row. Audit failures are logged and never interrupt billing."""
    try:
        db.session.add(AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=user_id,
            details=details or {},
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(
            "Failed to write audit event",
            extra={"action": action, "resource_id": resource_id, "error": str(e)},
        )
        return False

    logger.info(f"[AUDIT] {action}", extra={"resource_type": resource_type, "resource_id": resource_id, "user_id": user_id})
    return True
