"""
Storefront Core - Order Notification Helper
============================================
Sends order lifecycle events to an external webhook.
In dev mode (no NOTIFICATION_WEBHOOK_URL), logs only.
Called after commit; never raises.
"""

import logging

import requests

from config.settings import (
    NOTIFICATIONS_ENABLED, NOTIFICATION_WEBHOOK_URL, NOTIFICATION_TIMEOUT,
)

logger = logging.getLogger("storefront.notifications")

ORDER_EVENTS = ("order_created", "order_confirmed", "order_shipped", "order_delivered", "order_cancelled")


def build_payload(order, event_type: str) -> dict:
    return {
        "event": event_type,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "shipping_status": order.shipping_status,
        "total": str(order.total),
        "grand_total": str(order.grand_total),
        "currency": order.currency,
        "tracking_number": order.tracking_number,
    }


def notify_order_event(order, event_type: str) -> bool:
    """
    Send notification about an order event.

    Args:
        order: Committed Order instance
        event_type: One of ORDER_EVENTS

    Returns:
        True if the webhook accepted the event, False otherwise
    """
    if not NOTIFICATIONS_ENABLED:
        return False

    if event_type not in ORDER_EVENTS:
        logger.warning(f"Unknown order event '{event_type}' for {order.order_number}")

    payload = build_payload(order, event_type)

    if not NOTIFICATION_WEBHOOK_URL:
        logger.info(f"Notification skipped (no webhook): {event_type} -> {order.order_number}")
        return False

    try:
        response = requests.post(NOTIFICATION_WEBHOOK_URL, json=payload, timeout=NOTIFICATION_TIMEOUT)
        if response.status_code < 300:
            logger.info(f"Order notification sent: {event_type} -> {order.order_number}")
            return True
        logger.error(f"Notification webhook error: {response.status_code} - {response.text}")
        return False
    except requests.RequestException as e:
        logger.error(f"Notification failed: {e}")
        return False
