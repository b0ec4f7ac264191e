# events/analytics.py
import logging

from django.dispatch import Signal

logger = logging.getLogger(__name__)

# receivers get event_slug, step ("start" / "success" / "error") and error_message
registration_tracked = Signal()


def track_registration_event(event_slug, step, error_message=None):
    """Fire and forget. Never raises into the registration flow."""
    try:
        if error_message:
            logger.info("registration %s event=%s error=%s", step, event_slug, error_message)
        else:
            logger.info("registration %s event=%s", step, event_slug)
        results = registration_tracked.send_robust(
            sender=None, event_slug=event_slug, step=step, error_message=error_message,
        )
        for receiver, result in results:
            if isinstance(result, Exception):
                logger.warning("analytics receiver %r failed: %s", receiver, result)
    except Exception:
        logger.exception("registration analytics dispatch failed for %s", event_slug)
