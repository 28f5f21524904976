from typing import Any

from prometheus_client import Counter


WEBHOOK_EVENTS = Counter("touchrelay_webhook_events_total", "Webhook events processed", ["provider", "status"])
DELIVERY_ATTEMPTS = Counter("touchrelay_delivery_attempts_total", "Delivery attempts by outcome", ["platform", "status"])
INGEST_TOUCHES = Counter("touchrelay_ingest_touches_total", "Attribution beacons ingested", ["status"])
QUEUE_PUBLISHES = Counter("touchrelay_queue_publishes_total", "Delivery jobs published", ["status"])


def sum_counter(counter: Any) -> int:
    total = 0.0
    for child in getattr(counter, "_metrics", {}).values():
        total += float(getattr(child, "_value").get())
    return int(total)
