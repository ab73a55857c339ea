"""
Background Jobs for Shipping

Tracking sync: polls the carrier for orders with an active shipment and
applies the carrier status through the same forward-only path as webhooks,
so a missed webhook is eventually caught up. Idempotent by construction.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Collection, Dict, List, Optional

from jits_shipping.core.config import Settings, settings as app_settings
from jits_shipping.core.database import get_db_session
from jits_shipping.core.exceptions import ShippingError
from jits_shipping.modules.shipping.repository import OrderSnapshot
from jits_shipping.services.shipping_service import ShippingService

logger = logging.getLogger(__name__)

# Consecutive failures before an order is reported at ERROR level
FAILURE_ALERT_THRESHOLD = 3


class ShippingJobRunner:
    """
    Manages and runs shipping background jobs.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Callable = get_db_session,
        service_factory: Callable = ShippingService,
    ):
        self.settings = settings or app_settings
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._consecutive_failures: Dict[int, int] = {}

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start all background jobs."""
        if self._running:
            logger.warning("Shipping jobs already running")
            return

        self._running = True
        logger.info("Starting shipping background jobs")
        self._tasks = [asyncio.create_task(self._tracking_sync_loop())]

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Shipping background jobs stopped")

    # ==================== Tracking Sync Job ====================

    async def _tracking_sync_loop(self):
        """Main loop for tracking sync job."""
        while self._running:
            try:
                await self.run_tracking_sync()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Tracking sync job error: {e}")

            await asyncio.sleep(self.settings.SHIPPING_TRACKING_SYNC_INTERVAL_SECONDS)

    async def run_tracking_sync(self) -> Dict[str, int]:
        """Run a single tracking sync cycle."""
        async with self._session_factory() as db:
            service = self._service_factory(db, settings=self.settings)
            try:
                orders = await service.repository.list_active_shipments(
                    self.settings.SHIPPING_TRACKING_SYNC_BATCH_SIZE
                )
                if not orders:
                    logger.debug("No shipments need tracking update")
                    self._consecutive_failures.clear()
                    return {"checked": 0, "updated": 0, "failed": 0}

                logger.info(f"Syncing tracking for {len(orders)} orders")
                updated = 0
                failed = 0

                for order in orders:
                    try:
                        result = await service.tracking.refresh_order(order)
                    except ShippingError as e:
                        failed += 1
                        self._handle_tracking_failure(order, f"{e.code}: {e.message}")
                        continue

                    self._consecutive_failures.pop(order.id, None)
                    if not result.is_noop:
                        updated += 1

                # Polled orders, failed or not, go to the back of the queue
                await service.repository.mark_tracking_synced(
                    [o.id for o in orders], datetime.now(timezone.utc)
                )
                await self._prune_failures(service, {o.id for o in orders})

            finally:
                await service.close()

        logger.info(f"Tracking sync complete: {updated} updated, {failed} failed")
        return {"checked": len(orders), "updated": updated, "failed": failed}

    async def _prune_failures(self, service: ShippingService, polled_ids: Collection[int]):
        """Forget failure counts for orders that no longer need polling."""
        for order_id in [i for i in self._consecutive_failures if i not in polled_ids]:
            order = await service.repository.get(order_id)
            if order is None or not order.needs_tracking_sync:
                self._consecutive_failures.pop(order_id, None)
                logger.debug(f"Order {order_id} left the tracking sync set, failure count cleared")

    def _handle_tracking_failure(self, order: OrderSnapshot, error: str):
        """Handle tracking update failure."""
        failures = self._consecutive_failures.get(order.id, 0) + 1
        self._consecutive_failures[order.id] = failures

        if failures >= FAILURE_ALERT_THRESHOLD:
            logger.error(
                f"Tracking sync failed {failures} times in a row for order {order.id} "
                f"({order.tracking_number}): {error}"
            )
        else:
            logger.warning(f"Tracking sync failed for order {order.id}: {error}")


# Global job runner, started from the application lifespan
shipping_job_runner = ShippingJobRunner()
