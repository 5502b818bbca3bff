"""
Compare-and-write worker for the batch synchronizer.

Reads a key's value from the source of truth and from the target, and writes
the source value to the target when they differ.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..outcomes import NoChange, Skipped, SyncOutcome, Updated, WouldUpdate

Fetch = Callable[[str], Awaitable[Optional[Any]]]
Write = Callable[[str, Any], Awaitable[Any]]


def round_price(value: Any) -> float:
    """Normalize a price to two decimals so float noise never forces a write."""
    return round(float(value), 2)


class ValueReconciler:
    """
    Per-key worker: ``source`` value wins over ``target`` value.

    A fetch returning None means the key has no baseline on that side and the
    key is skipped. Fetch and write errors are left to propagate; the
    synchronizer classifies them.

    Usage:

        reconciler = ValueReconciler(
            fetch_source=erp.price_for,
            fetch_target=shop.price_for,
            write=shop.set_price,
            normalize=round_price,
        )
        summary = await BatchSynchronizer(reconciler).sync_many(skus)
    """

    def __init__(
        self,
        fetch_source: Fetch,
        fetch_target: Fetch,
        write: Write,
        *,
        normalize: Optional[Callable[[Any], Any]] = None,
        force: bool = False,
        dry_run: bool = False,
        source_name: str = "source",
        target_name: str = "target",
    ):
        self._fetch_source = fetch_source
        self._fetch_target = fetch_target
        self._write = write
        self._normalize = normalize
        self._force = force
        self._dry_run = dry_run
        self._source_name = source_name
        self._target_name = target_name

    async def __call__(self, key: str) -> SyncOutcome:
        source = await self._fetch_source(key)
        if source is None:
            return Skipped(key=key, reason=f"not found in {self._source_name}")

        target = await self._fetch_target(key)
        if target is None:
            return Skipped(key=key, reason=f"not found in {self._target_name}")

        if self._normalize is not None:
            source = self._normalize(source)
            target = self._normalize(target)

        if source == target and not self._force:
            return NoChange(key=key, value=source)

        if self._dry_run:
            return WouldUpdate(key=key, old=target, new=source)

        await self._write(key, source)
        logger.debug(f"{key}: {target!r} -> {source!r}")
        return Updated(key=key, old=target, new=source)
