"""
PSA API integration for fetching certification, population and order data
Documentation: https://api.psacard.com/publicapi/swagger/index.html
"""
import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Optional, TypedDict
import cloudscraper
import requests

from slabdesk.errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.psacard.com/publicapi"


class CertificationRecord(TypedDict):
    cert_number: str
    grade: Optional[str]
    grade_description: Optional[str]
    total_population: int
    population_higher: int
    spec_id: Optional[str]
    year: Optional[str]
    brand: Optional[str]
    series: Optional[str]
    card_number: Optional[str]
    description: Optional[str]
    psa10_count: int
    psa9_count: int
    updated_at: str


class GradingOrder(TypedDict):
    order_number: str
    user_id: str
    order_is_pending: Optional[bool]
    order_in_assembly: Optional[bool]
    order_is_in_progress: Optional[bool]
    grades_ready: Optional[bool]
    shipped: Optional[bool]
    ship_tracking_number: Optional[str]
    ship_date: Optional[str]
    estimated_completion_date: Optional[str]
    last_checked: str


class PsaClient:
    """
    Long-lived PSA public API client.

    One instance is built at startup and shared; the underlying cloudscraper
    session keeps the Cloudflare clearance cookies between calls.
    """

    max_retries = 2

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: int = 30,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._sleep = sleep
        # Use cloudscraper to bypass Cloudflare protection
        self.session = session if session is not None else cloudscraper.create_scraper()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        })

    def _request(self, endpoint: str) -> dict[str, Any]:
        """
        GET an endpoint with up to max_retries attempts.

        Raises:
            NotFoundError: 404/204 or PSA reports no data
            UpstreamError: auth failure, server error or transport failure
        """
        if not self.token:
            raise UpstreamError("PSA_TOKEN is not configured")

        url = f"{self.base_url}{endpoint}"

        # Add small jitter between calls
        self._sleep(random.randint(50, 150) / 1000.0)

        last_error = "no attempts made"
        for attempt in range(self.max_retries):
            try:
                response = self.session.get(url, timeout=self.timeout)

                if response.status_code == 401:
                    logger.error("[PSA API] Authentication Error (401) - Check your PSA_TOKEN")
                    raise UpstreamError("PSA API error: 401 unauthorized", status_code=401)

                if response.status_code in (204, 404):
                    raise NotFoundError(f"PSA has no record for {endpoint}")

                if response.status_code >= 500:
                    last_error = f"PSA API error: {response.status_code} {response.text[:200]}"
                    if attempt < self.max_retries - 1:
                        self._sleep((2 ** attempt) + (0.1 * attempt))
                        continue
                    raise UpstreamError(last_error, status_code=response.status_code)

                response.raise_for_status()
                data = response.json()

            except requests.exceptions.RequestException as e:
                last_error = f"PSA API request failed: {e}"
                if attempt < self.max_retries - 1:
                    self._sleep((2 ** attempt) + (0.1 * attempt))
                    continue
                logger.error("[PSA API] Error fetching %s: %s", endpoint, e)
                raise UpstreamError(last_error) from e

            # Old response format carries IsValidRequest/ServerMessage
            if "IsValidRequest" in data:
                if not data.get("IsValidRequest", False) or data.get("ServerMessage") == "No data found":
                    raise NotFoundError(f"PSA has no record for {endpoint}")
            return data

        raise UpstreamError(last_error)

    def get_certification_by_cert_number(self, cert_number: str) -> dict[str, Any]:
        data = self._request(f"/cert/GetByCertNumber/{cert_number}")
        if not data.get("PSACert"):
            raise NotFoundError(f"Certification {cert_number} not found")
        return data

    def get_certification_with_population(self, cert_number: str) -> dict[str, Any]:
        """Certification plus the PSASpecPopulationModel breakdown."""
        data = self._request(f"/cert/GetWithPopulationByCertNumber/{cert_number}")
        if not data.get("PSACert"):
            raise NotFoundError(f"Certification {cert_number} not found")
        return data

    def get_order_progress(self, order_number: str) -> dict[str, Any]:
        data = self._request(f"/order/GetProgressByOrderNumber/{order_number}")
        if not data.get("OrderProgress"):
            raise NotFoundError(f"Order {order_number} not found")
        return data


def _count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def map_psa_cert_to_record(
    payload: dict[str, Any],
    cert_number: str,
    now: datetime,
) -> CertificationRecord:
    """
    Map a PSA cert response into a CertificationRecord.

    Population breakdown counts default to 0 when PSASpecPopulationModel is
    absent (plain GetByCertNumber responses never carry it).
    """
    cert = payload.get("PSACert") or {}
    population = (payload.get("PSASpecPopulationModel") or {}).get("PSAPop") or {}

    return {
        "cert_number": cert_number,
        "grade": cert.get("CardGrade"),
        "grade_description": cert.get("GradeDescription"),
        "total_population": _count(cert.get("TotalPopulation")),
        "population_higher": _count(cert.get("PopulationHigher")),
        "spec_id": str(cert["SpecID"]) if cert.get("SpecID") is not None else None,
        "year": cert.get("Year"),
        "brand": cert.get("Brand"),
        "series": cert.get("Series") or cert.get("SetName") or cert.get("Category"),
        "card_number": cert.get("CardNumber"),
        "description": cert.get("Description") or cert.get("Subject"),
        "psa10_count": _count(population.get("Grade10")),
        "psa9_count": _count(population.get("Grade9")),
        "updated_at": now.isoformat(),
    }


def map_order_progress(
    payload: dict[str, Any],
    order_number: str,
    user_id: str,
    now: datetime,
) -> GradingOrder:
    progress = payload.get("OrderProgress") or {}
    return {
        "order_number": order_number,
        "user_id": user_id,
        "order_is_pending": progress.get("orderIsPending"),
        "order_in_assembly": progress.get("orderInAssembly"),
        "order_is_in_progress": progress.get("orderIsInProgress"),
        "grades_ready": progress.get("gradesReady"),
        "shipped": progress.get("shipped"),
        "ship_tracking_number": progress.get("shipTrackingNumber") or None,
        "ship_date": progress.get("shipDate") or None,
        "estimated_completion_date": progress.get("estimatedCompletionDate") or None,
        "last_checked": now.isoformat(),
    }
