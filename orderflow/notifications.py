"""
Push customer notifications for order status changes. Backend: Redis (LPUSH) or AWS SQS when
SQS_QUEUE_URL is set. The email/SMS sender consuming the queue lives outside this service.
"""
import json

from orderflow.config import settings
from orderflow.models import Order, StatusHistoryEntry
from orderflow.redis_client import get_redis
from orderflow.sqs_client import send_message

NOTIFICATION_QUEUE_KEY = "queue:order_notifications"


def make_notification_body(order: Order, entry: StatusHistoryEntry) -> dict:
    return {
        "type": "ORDER_STATUS_CHANGED",
        "order_id": order.id,
        "order_code": order.order_code,
        "history_id": entry.id,
        "from_status": entry.from_status.value if entry.from_status else None,
        "to_status": entry.to_status.value,
        "note_customer": entry.note_customer,
        "carrier": order.carrier,
        "tracking_code": order.tracking_code,
        "buyer_name": order.buyer_snapshot.name,
        "buyer_email": order.buyer_snapshot.email,
        "buyer_phone": order.buyer_snapshot.phone,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def publish_order_notification(order: Order, entry: StatusHistoryEntry) -> None:
    body = make_notification_body(order, entry)
    if settings.sqs_queue_url:
        await send_message(body, group_id=order.id)
    else:
        r = await get_redis()
        await r.lpush(NOTIFICATION_QUEUE_KEY, json.dumps(body))
