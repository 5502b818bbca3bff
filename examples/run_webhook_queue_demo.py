"""
Demo: Idempotent Webhook Queue

Feeds a burst of order webhooks (with redeliveries) through EventQueue and
shows duplicates being dropped, a transient 429 being retried with backoff,
and a terminal rejection being recorded without retry.

No HTTP or external dependencies.
"""

import asyncio

from loguru import logger

from storesync import EventQueue, ProcessResult, QueueConfig, RateLimited

attempts = {}


async def create_order(payload, category, source):
    order_id = payload["id"]
    attempts[order_id] = attempts.get(order_id, 0) + 1
    await asyncio.sleep(0.05)  # simulate ERP call

    if order_id == "1002" and attempts[order_id] < 3:
        raise RateLimited("ERP 429", suggested_delay_ms=200)
    if order_id == "1004":
        return ProcessResult(success=False, retry=False, error="customer blocked")
    return {"erp_ref": f"SO-{order_id}"}


async def main():
    logger.info("🚀 Webhook Queue Demo")
    logger.info("=" * 70)

    config = QueueConfig(
        min_request_delay_ms=100,
        base_retry_delay_ms=100,
        max_retry_delay_ms=1000,
    )
    queue = EventQueue(config, processor=create_order)

    async with queue:
        for order_id in ["1001", "1002", "1001", "1003", "1004", "1003"]:
            result = queue.enqueue(order_id, {"id": order_id}, "orders/create", "demo-shop")
            marker = "📥" if result.queued else "🔁"
            logger.info(f"{marker} {order_id}: {result.reason or f'position {result.position}'}")

        status = queue.get_status()
        logger.info(f"📊 Queue length: {status.queue_length}, processing: {status.is_processing}")

    logger.info("")
    logger.info("Recent:")
    for entry in queue.get_recent(10):
        logger.info(f"   {entry.identity}: {entry.state} {entry.error or ''}")

    stats = queue.get_status().stats
    logger.info(
        f"✅ total={stats.total} processed={stats.processed} duplicates={stats.duplicates} "
        f"failed={stats.failed} retries={stats.retries}"
    )

    # a late redelivery of an order already completed is still rejected
    late = queue.enqueue("1001", {"id": "1001"}, "orders/create", "demo-shop")
    logger.info(f"🔁 late redelivery of 1001: {late.reason} ({late.cache_state})")
    await queue.close()


if __name__ == "__main__":
    asyncio.run(main())
