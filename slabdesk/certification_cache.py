"""
PSA certification cache

Serves card_psa_data rows while they are fresh and refreshes them from the
PSA API once they pass the staleness threshold. When a refresh fails and an
older row exists, the older row is served instead (unless strict mode is on).
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from slabdesk.errors import NotFoundError, UpstreamError
from slabdesk.psa_api import CertificationRecord, PsaClient, map_psa_cert_to_record
from slabdesk.record_store import RecordStore, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

TABLE = "card_psa_data"
DEFAULT_TTL = timedelta(hours=24)


class KeyedLocks:
    """One lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


@dataclass
class CertificationResult:
    record: CertificationRecord
    source: str  # "cache", "upstream" or "stale"

    @property
    def degraded(self) -> bool:
        return self.source == "stale"

    def to_dict(self) -> dict:
        return {"data": dict(self.record), "source": self.source, "degraded": self.degraded}


class CertificationCache:
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
        # Share one KeyedLocks across requests to collapse concurrent refreshes
        self.in_flight = in_flight if in_flight is not None else KeyedLocks()

    def is_fresh(self, record: Optional[dict], now: datetime) -> bool:
        if not record:
            return False
        return now - parse_timestamp(record["updated_at"]) < self.ttl

    def get_certification(self, cert_number: str, include_population: bool = False) -> CertificationResult:
        """
        Return certification data for cert_number.

        Args:
            cert_number: PSA certification number
            include_population: ask PSA for the population breakdown on refresh

        Raises:
            ValueError: empty cert_number
            NotFoundError: PSA has no such cert and nothing is cached
            UpstreamError: PSA failed and there is no usable cached row
        """
        cert_number = (cert_number or "").strip()
        if not cert_number:
            raise ValueError("cert_number is required")

        existing = self.store.get(TABLE, cert_number)
        if self.is_fresh(existing, self.clock()):
            return CertificationResult(existing, "cache")

        with self.in_flight.hold(f"cert:{cert_number}"):
            # Another caller may have refreshed while we waited
            existing = self.store.get(TABLE, cert_number)
            if self.is_fresh(existing, self.clock()):
                return CertificationResult(existing, "cache")
            return self._refresh(cert_number, include_population, existing)

    def _refresh(
        self,
        cert_number: str,
        include_population: bool,
        existing: Optional[dict],
    ) -> CertificationResult:
        try:
            if include_population:
                payload = self.psa_client.get_certification_with_population(cert_number)
            else:
                payload = self.psa_client.get_certification_by_cert_number(cert_number)
        except (UpstreamError, NotFoundError) as e:
            if existing and not self.strict:
                logger.warning(
                    "[PSA API] Refresh failed for cert %s, serving data from %s: %s",
                    cert_number, existing["updated_at"], e,
                )
                return CertificationResult(existing, "stale")
            raise

        record = map_psa_cert_to_record(payload, cert_number, self.clock())
        stored = self.store.upsert(TABLE, dict(record))
        logger.info("[PSA API] Cached cert %s (grade %s)", cert_number, record["grade"])
        return CertificationResult(stored, "upstream")
