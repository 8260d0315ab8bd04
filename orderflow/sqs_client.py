"""
AWS SQS helper for outbound customer notifications. Used when SQS_QUEUE_URL is set.
"""
import asyncio
import json
from typing import Any

import boto3

from orderflow.config import settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=settings.aws_region)
    return _sqs_client


async def send_message(body: dict, group_id: str | None = None) -> None:
    """Send message to the notification queue (run boto3 in thread to not block)."""
    client = _get_client()
    kwargs: dict[str, Any] = {
        "QueueUrl": settings.sqs_queue_url,
        "MessageBody": json.dumps(body, default=str),
    }
    if group_id and settings.sqs_queue_url and settings.sqs_queue_url.endswith(".fifo"):
        # FIFO queues keep one order's notifications in sequence
        kwargs["MessageGroupId"] = group_id
        kwargs["MessageDeduplicationId"] = f"{group_id}:{body.get('history_id')}"
    await asyncio.to_thread(client.send_message, **kwargs)
