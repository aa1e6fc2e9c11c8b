# --- order_service/events.py ---
import json
import uuid
import logging
from decimal import Decimal

import aioboto3
from fastapi.encoders import jsonable_encoder

from order_service.database import utcnow
from order_service.pricing import round_cents
from order_service.ws_manager import ConnectionManager

logger = logging.getLogger("order-service.events")
logger.setLevel(logging.INFO)

# Explicit routing
EVENT_TARGETS = {
    "order.created": ["Order Events", "Notification Service"],
    "order.accepted": ["Order Events", "Notification Service"],
    "order.status_changed": ["Order Events", "Notification Service"],
    "order.cancelled": ["Order Events", "Notification Service"],
    "payment.escrowed": ["Order Events"],
    "escrow.released": ["Order Events", "Notification Service"],
    "assignment.offered": ["Notification Service"],
    "assignment.accepted": ["Order Events", "Notification Service"],
    "assignment.declined": ["Order Events"],
    "wallet.transaction_requested": ["Notification Service"],
    "wallet.transaction_processed": ["Notification Service"],
    "maintenance.completed": ["Order Events"],
}


class EventPublisher:
    """
    Notification sink: WebSocket clients, the log and, with USE_AWS, SQS.
    Only ever called after the owning transaction committed; never raises.
    """

    def __init__(self, config, ws_manager: ConnectionManager = None):
        self.use_aws = config.USE_AWS
        self.aws_region = config.AWS_REGION
        self.queue_urls = {
            "Order Events": config.ORDER_EVENTS_QUEUE_URL,
            "Notification Service": config.NOTIFICATION_QUEUE_URL,
        }
        self.ws_manager = ws_manager or ConnectionManager()
        self.session = aioboto3.Session() if self.use_aws else None

    def envelope(self, event_type: str, data: dict, trace_id: str = None) -> dict:
        data = jsonable_encoder(data, custom_encoder={Decimal: lambda d: str(round_cents(d))})
        return {
            "type": event_type,
            "event_id": str(data.get("event_id") or uuid.uuid4()),
            "data": data,
            "trace_id": trace_id,
            "timestamp": utcnow().isoformat(),
        }

    async def emit(self, event_type: str, data: dict, trace_id: str = None):
        try:
            event_payload = self.envelope(event_type, data, trace_id)
        except Exception as e:
            logger.error(f"[EVENT ERROR] could not encode {event_type}: {e}")
            return

        # WS
        try:
            await self.ws_manager.broadcast(event_payload)
        except Exception as e:
            logger.warning(f"[WebSocket ERROR] {e}")

        if not self.use_aws:
            logger.info(f"[LOCAL EVENT EMIT] {event_type} event_id={event_payload['event_id']}")
            return

        # SQS
        try:
            async with self.session.client("sqs", region_name=self.aws_region) as sqs:
                for target in EVENT_TARGETS.get(event_type, []):
                    queue_url = self.queue_urls.get(target)
                    if not queue_url:
                        logger.warning(f"[WARN] Missing queue for {target}")
                        continue
                    try:
                        await sqs.send_message(QueueUrl=queue_url, MessageBody=json.dumps(event_payload))
                        logger.info(f"[SQS → {target}] {event_type} event_id={event_payload['event_id']}")
                    except Exception as e:
                        logger.warning(f"[SQS ERROR → {target}] {e}")
        except Exception as e:
            logger.error(f"[EVENT ERROR] {e}")
