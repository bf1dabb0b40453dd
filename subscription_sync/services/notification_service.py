# notification_service.py
import logging
import threading

import requests
from flask import current_app

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Fire-and-forget notifications to the external notification endpoint.

    Delivery failures are logged and dropped; they never reach the caller.
    """

    @staticmethod
    def post(payload):
        """Send ``payload`` in the background. Returns the worker thread, if any."""
        url = current_app.config.get("NOTIFICATION_WEBHOOK_URL")
        timeout = current_app.config.get("NOTIFICATION_TIMEOUT", 30)
        run_async = current_app.config.get("NOTIFICATIONS_ASYNC", True)

        if not url:
            logger.debug("Notification endpoint not configured, skipping", extra={"event_type": payload.get("event_type")})
            return None

        def send():
            try:
                response = requests.post(url, json=payload, timeout=timeout)
                response.raise_for_status()
                logger.info(
                    "Notification delivered",
                    extra={"event_type": payload.get("event_type"), "status_code": response.status_code},
                )
            except requests.RequestException as e:
                logger.error(
                    "Notification delivery failed",
                    extra={"event_type": payload.get("event_type"), "error": str(e)},
                )

        if not run_async:
            send()
            return None

        thread = threading.Thread(target=send, name="subscription-notification")
        thread.daemon = True
        thread.start()
        return thread

    @classmethod
    def notify_subscription_activated(cls, user_id, plan_id, plan_name=None):
        return cls.post({
            "event_type": "subscription_activated",
            "title": "Subscription active",
            "message": f"Your {plan_name or 'subscription'} plan is now active.",
            "link": "/settings",
            "user_ids": [user_id],
            "metadata": {"plan_id": plan_id, "plan_name": plan_name},
        })
