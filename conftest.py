"""
Shared fakes for the SlabDesk tests: no network, in-memory SQLite.
"""
import json as jsonlib
from datetime import datetime, timedelta, timezone
import pytest
import requests

from slabdesk.errors import NotFoundError
from slabdesk.record_store import open_record_store

START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (jsonlib.dumps(payload) if payload is not None else "")
        self.content = self.text.encode()

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise requests.exceptions.JSONDecodeError("Expecting value", "", 0)
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")


class FakeSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.headers: dict = {}
        self.calls: list = []

    def _next(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)


def psa_payload(cert_number="12345678", grade="10", total_population=500, population=None, **cert_fields):
    cert = {
        "CertNumber": cert_number,
        "CardGrade": grade,
        "GradeDescription": "GEM MT 10" if grade == "10" else "MINT 9",
        "TotalPopulation": total_population,
        "PopulationHigher": 0,
        "Year": "1986",
        "Brand": "FLEER",
        "Series": "BASKETBALL",
        "CardNumber": "57",
        "Description": "MICHAEL JORDAN",
        "SpecID": "1234",
    }
    cert.update(cert_fields)
    payload = {"PSACert": cert}
    if population is not None:
        payload["PSASpecPopulationModel"] = {"SpecID": "1234", "PSAPop": population}
    return payload


class FakePsaClient:
    """Answers from a dict of cert/order number -> payload or exception."""

    def __init__(self, certs=None, orders=None):
        self.certs = dict(certs or {})
        self.orders = dict(orders or {})
        self.calls: list = []

    def _answer(self, table, key):
        if key not in table:
            raise NotFoundError(f"{key} not found")
        answer = table[key]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get_certification_by_cert_number(self, cert_number):
        self.calls.append(("cert", cert_number))
        payload = dict(self._answer(self.certs, cert_number))
        payload.pop("PSASpecPopulationModel", None)
        return payload

    def get_certification_with_population(self, cert_number):
        self.calls.append(("cert+pop", cert_number))
        return self._answer(self.certs, cert_number)

    def get_order_progress(self, order_number):
        self.calls.append(("order", order_number))
        return self._answer(self.orders, order_number)


class FakeBidder:
    def __init__(self, result=None, error: Exception = None):
        self.result = result if result is not None else {"auctionStatus": "ACTIVE", "currentPrice": {"value": "41.00"}}
        self.error = error
        self.calls: list = []

    def place_bid(self, user_id, item_id, max_bid):
        self.calls.append((user_id, item_id, max_bid))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    with open_record_store(":memory:") as record_store:
        yield record_store
