"""
PSA grading-order progress tracking

Same cache-and-refresh shape as the certification cache, with a one hour
window on last_checked.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from slabdesk.certification_cache import KeyedLocks
from slabdesk.errors import NotFoundError, UpstreamError
from slabdesk.psa_api import GradingOrder, PsaClient, map_order_progress
from slabdesk.record_store import RecordStore, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TABLE = "psa_grading_orders"
DEFAULT_TTL = timedelta(minutes=60)
BOOL_COLUMNS = ("order_is_pending", "order_in_assembly", "order_is_in_progress", "grades_ready", "shipped")


def _from_row(row: dict) -> GradingOrder:
    order = dict(row)
    for column in BOOL_COLUMNS:
        if order.get(column) is not None:
            order[column] = bool(order[column])
    return order


class GradingOrderTracker:
    def __init__(
        self,
        store: RecordStore,
        psa_client: PsaClient,
        ttl: timedelta = DEFAULT_TTL,
        strict: bool = False,
        clock: Callable[[], datetime] = utcnow,
        in_flight: Optional[KeyedLocks] = None,
    ):
        self.store = store
        self.psa_client = psa_client
        self.ttl = ttl
        self.strict = strict
        self.clock = clock
        self.in_flight = in_flight if in_flight is not None else KeyedLocks()

    def _owned(self, user_id: str, order_number: str) -> Optional[dict]:
        row = self.store.get(TABLE, order_number)
        if row and row["user_id"] != user_id:
            # Another user's order is invisible, same as a missing one
            return None
        return row

    def _is_fresh(self, row: Optional[dict]) -> bool:
        return bool(row) and self.clock() - parse_timestamp(row["last_checked"]) < self.ttl

    def get_order(self, user_id: str, order_number: str) -> GradingOrder:
        """Return order progress, refreshing from PSA once last_checked is an hour old."""
        order_number = (order_number or "").strip()
        if not order_number:
            raise ValueError("order_number is required")

        existing = self._owned(user_id, order_number)
        if self._is_fresh(existing):
            return _from_row(existing)

        with self.in_flight.hold(f"order:{order_number}"):
            # Another caller may have refreshed while we waited
            existing = self._owned(user_id, order_number)
            if self._is_fresh(existing):
                return _from_row(existing)
            try:
                return self.track_order(user_id, order_number)
            except (UpstreamError, NotFoundError) as e:
                if existing and not self.strict:
                    logger.warning("[PSA API] Order %s refresh failed, serving cached progress: %s", order_number, e)
                    return _from_row(existing)
                raise

    def track_order(self, user_id: str, order_number: str) -> GradingOrder:
        """Fetch current progress from PSA and store it (start or refresh tracking)."""
        current = self.store.get(TABLE, order_number)
        if current and current["user_id"] != user_id:
            raise NotFoundError(f"Order {order_number} not found")

        payload = self.psa_client.get_order_progress(order_number)
        order = map_order_progress(payload, order_number, user_id, self.clock())
        stored = self.store.upsert(TABLE, dict(order))
        logger.info("[PSA API] Order %s progress updated (shipped=%s)", order_number, order["shipped"])
        return _from_row(stored)
