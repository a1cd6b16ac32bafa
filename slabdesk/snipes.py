"""
Snipe-bid lifecycle

pending/queued -> processing -> completed | error
pending/queued -> cancelled
completed -> won | lost   (auction outcome, reported by the listener)

Every status change goes through RecordStore.conditional_update, so two
callers racing on the same snipe cannot both claim it.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Protocol

from slabdesk.errors import InvalidStateError, NotFoundError
from slabdesk.record_store import RecordStore, utcnow

logger = logging.getLogger(__name__)

TABLE = "snipes"

PENDING = "pending"
QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
WON = "won"
LOST = "lost"
ERROR = "error"
CANCELLED = "cancelled"

PRE_PROCESSING = (PENDING, QUEUED)
TERMINAL = (COMPLETED, WON, LOST, ERROR, CANCELLED)
ALL_STATUSES = PRE_PROCESSING + (PROCESSING,) + TERMINAL

# Older clients report these names
STATUS_ALIASES = {"placed": COMPLETED, "failed": ERROR}

BID_STRATEGIES = ("early", "last")


def normalize_status(status: str) -> str:
    status = STATUS_ALIASES.get(status, status)
    if status not in ALL_STATUSES:
        raise ValueError(f"Unknown snipe status: {status}")
    return status


class Bidder(Protocol):
    def place_bid(self, user_id: str, item_id: str, max_bid: Decimal) -> dict[str, Any]: ...


@dataclass
class Snipe:
    id: str
    user_id: str
    item_id: str
    max_bid: Decimal
    status: str
    item_title: Optional[str] = None
    current_bid: Optional[Decimal] = None
    bid_strategy: str = "last"
    end_time: Optional[str] = None
    bid_placed_at: Optional[str] = None
    bid_response: Optional[Any] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @classmethod
    def from_row(cls, row: dict) -> "Snipe":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            item_id=row["item_id"],
            max_bid=Decimal(row["max_bid"]),
            status=row["status"],
            item_title=row.get("item_title"),
            current_bid=Decimal(row["current_bid"]) if row.get("current_bid") is not None else None,
            bid_strategy=row.get("bid_strategy") or "last",
            end_time=row.get("end_time"),
            bid_placed_at=row.get("bid_placed_at"),
            bid_response=json.loads(row["bid_response"]) if row.get("bid_response") else None,
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "item_title": self.item_title,
            "max_bid": str(self.max_bid),
            "current_bid": str(self.current_bid) if self.current_bid is not None else None,
            "bid_strategy": self.bid_strategy,
            "end_time": self.end_time,
            "status": self.status,
            "bid_placed_at": self.bid_placed_at,
            "bid_response": self.bid_response,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"{field} must be a number") from e


class SnipeLifecycle:
    def __init__(
        self,
        store: RecordStore,
        bidder: Bidder,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.store = store
        self.bidder = bidder
        self.clock = clock
        self.id_factory = id_factory

    def create_snipe(
        self,
        user_id: str,
        item_id: str,
        max_bid: Any,
        scheduled: bool = False,
        item_title: Optional[str] = None,
        current_bid: Any = None,
        bid_strategy: str = "last",
        end_time: Optional[str] = None,
    ) -> Snipe:
        """Create a snipe in pending (or queued, when scheduled for later)."""
        if not item_id:
            raise ValueError("item_id is required")
        amount = _to_decimal(max_bid, "max_bid")
        if not amount.is_finite() or amount <= 0:
            raise ValueError("max_bid must be greater than 0")
        current = _to_decimal(current_bid, "current_bid") if current_bid is not None else None
        if current is not None and (not current.is_finite() or current < 0):
            raise ValueError("current_bid must not be negative")
        if bid_strategy not in BID_STRATEGIES:
            raise ValueError(f"bid_strategy must be one of {BID_STRATEGIES}")

        now = self.clock().isoformat()
        row = self.store.insert(TABLE, {
            "id": self.id_factory(),
            "user_id": user_id,
            "item_id": item_id,
            "item_title": item_title,
            "max_bid": str(amount),
            "current_bid": str(current) if current is not None else None,
            "bid_strategy": bid_strategy,
            "end_time": end_time,
            "status": QUEUED if scheduled else PENDING,
            "created_at": now,
            "updated_at": now,
        })
        logger.info("[Snipe] Created %s on item %s (max %s)", row["id"], item_id, amount)
        return Snipe.from_row(row)

    def get_snipe(self, snipe_id: str, user_id: Optional[str] = None) -> Snipe:
        row = self.store.get(TABLE, snipe_id)
        # Other users' snipes look missing rather than forbidden
        if not row or (user_id is not None and row["user_id"] != user_id):
            raise NotFoundError(f"Snipe {snipe_id} not found")
        return Snipe.from_row(row)

    def list_snipes(self, user_id: str, status: Optional[str] = None) -> list[Snipe]:
        filters = {"user_id": user_id}
        if status:
            filters["status"] = normalize_status(status)
        return [Snipe.from_row(row) for row in self.store.select(TABLE, order_by="-created_at", **filters)]

    def _transition(self, snipe_id: str, expected: tuple, fields: dict) -> bool:
        fields = dict(fields, updated_at=self.clock().isoformat())
        return self.store.conditional_update(TABLE, snipe_id, expected, fields)

    def place_bid(self, snipe_id: str, user_id: Optional[str] = None) -> Snipe:
        """
        Claim the snipe and place its bid.

        A failed bid does not raise: the snipe ends in error with the failure
        message, so callers must look at the returned snipe's status.

        Raises:
            NotFoundError: no such snipe (or not owned by user_id)
            InvalidStateError: snipe is not pending/queued, or another caller
                claimed it first
        """
        snipe = self.get_snipe(snipe_id, user_id)
        if snipe.status not in PRE_PROCESSING:
            raise InvalidStateError(f"Snipe is already in {snipe.status} status", status=snipe.status)

        if not self._transition(snipe_id, PRE_PROCESSING, {"status": PROCESSING}):
            current = self.get_snipe(snipe_id)
            raise InvalidStateError(f"Snipe is already in {current.status} status", status=current.status)

        try:
            result = self.bidder.place_bid(snipe.user_id, snipe.item_id, snipe.max_bid)
        except Exception as e:
            logger.error("[Snipe] Error placing bid for %s: %s", snipe_id, e)
            self._transition(snipe_id, (PROCESSING,), {
                "status": ERROR,
                "error_message": str(e) or "Failed to place bid",
            })
            return self.get_snipe(snipe_id)

        self._transition(snipe_id, (PROCESSING,), {
            "status": COMPLETED,
            "bid_placed_at": self.clock().isoformat(),
            "bid_response": json.dumps(result, default=str),
        })
        logger.info("[Snipe] Bid placed for %s on item %s", snipe_id, snipe.item_id)
        return self.get_snipe(snipe_id)

    def cancel(self, snipe_id: str, user_id: Optional[str] = None) -> Snipe:
        snipe = self.get_snipe(snipe_id, user_id)
        if not self._transition(snipe_id, PRE_PROCESSING, {"status": CANCELLED}):
            current = self.get_snipe(snipe_id)
            raise InvalidStateError(
                f"Cannot cancel snipe in {current.status} status", status=current.status
            )
        logger.info("[Snipe] Cancelled %s (was %s)", snipe_id, snipe.status)
        return self.get_snipe(snipe_id)

    def resolve_auction(self, snipe_id: str, won: bool) -> Snipe:
        """Record the auction outcome for a snipe whose bid was placed."""
        outcome = WON if won else LOST
        if not self._transition(snipe_id, (COMPLETED,), {"status": outcome}):
            current = self.get_snipe(snipe_id)
            raise InvalidStateError(
                f"Cannot resolve snipe in {current.status} status", status=current.status
            )
        return self.get_snipe(snipe_id)
