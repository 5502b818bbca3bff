"""
Demo: Adaptive Price Sync

Reconciles 60 SKU prices from a fake ERP into a fake storefront that
answers 429 when more than 8 writes are in flight. Watch the chunk size
halve on rate limits and grow back on clean chunks via ThrottleFeedbackBus.

Run with --dry-run to see what would change without writing.
"""

import asyncio
import random
import sys

from loguru import logger

from storesync import (
    BatchSynchronizer,
    RateLimited,
    SyncOptions,
    ThrottleFeedbackBus,
    ValueReconciler,
)
from storesync.sync import ThrottleEvent, round_price


class FakeStorefront:
    """Storefront with a crude in-flight quota."""

    def __init__(self, prices, quota: int = 8):
        self.prices = dict(prices)
        self.quota = quota
        self.in_flight = 0

    async def price_for(self, sku):
        await asyncio.sleep(0.01)
        return self.prices.get(sku)

    async def set_price(self, sku, value):
        self.in_flight += 1
        try:
            await asyncio.sleep(0.02)
            if self.in_flight > self.quota:
                raise RateLimited("storefront 429", suggested_delay_ms=200)
            self.prices[sku] = value
        finally:
            self.in_flight -= 1


async def main(dry_run: bool = False):
    logger.info("🚀 Adaptive Price Sync Demo")
    logger.info("=" * 70)

    rng = random.Random(7)
    skus = [f"SKU-{i:03d}" for i in range(60)]
    erp = {sku: round(rng.uniform(5, 50), 2) for sku in skus}
    shop = FakeStorefront({sku: price + (1 if i % 3 else 0) for i, (sku, price) in enumerate(erp.items())})
    del shop.prices["SKU-059"]  # not listed yet

    async def erp_price(sku):
        await asyncio.sleep(0.01)
        return erp.get(sku)

    async def on_throttle(event: ThrottleEvent):
        arrow = "🔻" if event.delta < 0 else "🔺"
        logger.info(
            f"{arrow} concurrency {event.previous} -> {event.current} "
            f"({event.reason.value}, wait {event.wait_ms}ms)"
        )

    bus = ThrottleFeedbackBus()
    bus.subscribe(on_throttle)

    reconciler = ValueReconciler(
        erp_price,
        shop.price_for,
        shop.set_price,
        normalize=round_price,
        dry_run=dry_run,
        source_name="ERP",
        target_name="storefront",
    )
    options = SyncOptions(
        initial_concurrency=16,
        floor=2,
        ceiling=16,
        max_retries=3,
        retry_delay_ms=200,
        rate_limit_wait_ms=200,
        max_rate_limit_wait_ms=2000,
        rate_limit_pass_delay_ms=500,
    )

    summary = await BatchSynchronizer(reconciler, options, feedback=bus).sync_many(skus)

    logger.info("")
    logger.info(
        f"✅ {summary.total} SKUs in {summary.duration_seconds:.2f}s over {summary.passes} passes: "
        f"updated={summary.updated} no_change={summary.no_change} skipped={summary.skipped} "
        f"errors={summary.errors} final_concurrency={summary.final_concurrency}"
    )


if __name__ == "__main__":
    asyncio.run(main(dry_run="--dry-run" in sys.argv))
