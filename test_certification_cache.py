"""Tests for the PSA certification cache"""
import threading
from datetime import timedelta
import pytest

from conftest import FakePsaClient, psa_payload
from slabdesk.certification_cache import CertificationCache, KeyedLocks
from slabdesk.errors import NotFoundError, UpstreamError
from slabdesk.order_tracker import GradingOrderTracker
from slabdesk.record_store import open_record_store


def seed(store, clock, age: timedelta, **overrides):
    record = {
        "cert_number": "12345678",
        "grade": "9",
        "grade_description": "MINT 9",
        "total_population": 300,
        "population_higher": 20,
        "psa10_count": 20,
        "psa9_count": 280,
        "updated_at": (clock() - age).isoformat(),
    }
    record.update(overrides)
    return store.upsert("card_psa_data", record)


def test_fresh_record_served_without_upstream_call(store, clock):
    seed(store, clock, timedelta(hours=23, minutes=59))
    psa = FakePsaClient({"12345678": psa_payload()})
    cache = CertificationCache(store, psa, clock=clock)

    result = cache.get_certification("12345678")

    assert psa.calls == []
    assert result.source == "cache"
    assert result.record["grade"] == "9"
    assert not result.degraded


def test_missing_record_fetched_and_stored_with_zero_population_breakdown(store, clock):
    psa = FakePsaClient({"12345678": psa_payload(grade="10", total_population=500)})
    cache = CertificationCache(store, psa, clock=clock)

    result = cache.get_certification("12345678")

    assert psa.calls == [("cert", "12345678")]
    assert result.source == "upstream"
    stored = store.get("card_psa_data", "12345678")
    assert stored["grade"] == "10"
    assert stored["total_population"] == 500
    assert stored["psa10_count"] == 0
    assert stored["psa9_count"] == 0
    assert stored["updated_at"] == clock().isoformat()


def test_record_exactly_24_hours_old_is_refreshed(store, clock):
    seed(store, clock, timedelta(hours=24))
    psa = FakePsaClient({"12345678": psa_payload(grade="10")})
    cache = CertificationCache(store, psa, clock=clock)

    result = cache.get_certification("12345678")

    assert len(psa.calls) == 1
    assert result.source == "upstream"
    assert store.get("card_psa_data", "12345678")["grade"] == "10"
    assert len(store.select("card_psa_data")) == 1


def test_each_stale_lookup_makes_one_upstream_call(store, clock):
    psa = FakePsaClient({"12345678": psa_payload()})
    cache = CertificationCache(store, psa, clock=clock)

    cache.get_certification("12345678")
    clock.advance(hours=25)
    cache.get_certification("12345678")
    clock.advance(hours=1)
    cache.get_certification("12345678")

    assert len(psa.calls) == 2


def test_population_breakdown_requested_and_round_trips(store, clock):
    population = {"Grade10": 812, "Grade9": 4410, "Grade8": 2000}
    psa = FakePsaClient({"12345678": psa_payload(population=population)})
    cache = CertificationCache(store, psa, clock=clock)

    first = cache.get_certification("12345678", include_population=True)
    clock.advance(hours=2)
    second = cache.get_certification("12345678", include_population=True)

    assert psa.calls == [("cert+pop", "12345678")]
    assert second.source == "cache"
    assert (second.record["psa10_count"], second.record["psa9_count"]) == (812, 4410)
    assert second.record["total_population"] == first.record["total_population"]


def test_upstream_failure_serves_stale_record(store, clock):
    seeded = seed(store, clock, timedelta(days=3))
    psa = FakePsaClient({"12345678": UpstreamError("PSA API error: 500")})
    cache = CertificationCache(store, psa, clock=clock)

    result = cache.get_certification("12345678")

    assert result.source == "stale"
    assert result.degraded
    assert result.record == seeded
    assert store.get("card_psa_data", "12345678")["updated_at"] == seeded["updated_at"]


def test_not_found_upstream_still_serves_stale_record(store, clock):
    seed(store, clock, timedelta(days=3))
    cache = CertificationCache(store, FakePsaClient(), clock=clock)

    assert cache.get_certification("12345678").degraded


def test_strict_mode_raises_instead_of_serving_stale(store, clock):
    seed(store, clock, timedelta(days=3))
    psa = FakePsaClient({"12345678": UpstreamError("PSA API error: 500")})
    cache = CertificationCache(store, psa, clock=clock, strict=True)

    with pytest.raises(UpstreamError):
        cache.get_certification("12345678")


def test_unknown_cert_without_record_raises_not_found(store, clock):
    cache = CertificationCache(store, FakePsaClient(), clock=clock)

    with pytest.raises(NotFoundError):
        cache.get_certification("99999999")
    assert store.get("card_psa_data", "99999999") is None


def test_upstream_failure_without_record_is_surfaced(store, clock):
    psa = FakePsaClient({"12345678": UpstreamError("timeout")})
    cache = CertificationCache(store, psa, clock=clock)

    with pytest.raises(UpstreamError):
        cache.get_certification("12345678")


def test_blank_cert_number_rejected(store, clock):
    cache = CertificationCache(store, FakePsaClient(), clock=clock)
    with pytest.raises(ValueError):
        cache.get_certification("   ")


def test_shorter_ttl_from_settings(store, clock):
    seed(store, clock, timedelta(hours=2))
    psa = FakePsaClient({"12345678": psa_payload()})
    cache = CertificationCache(store, psa, clock=clock, ttl=timedelta(hours=1))

    assert cache.get_certification("12345678").source == "upstream"


class BlockingPsaClient(FakePsaClient):
    """First call parks until released so a second caller can queue up."""

    def __init__(self, certs):
        super().__init__(certs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_certification_by_cert_number(self, cert_number):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().get_certification_by_cert_number(cert_number)


def test_concurrent_refreshes_share_one_upstream_call(tmp_path, clock):
    db_path = str(tmp_path / "slabdesk.db")
    psa = BlockingPsaClient({"12345678": psa_payload()})
    in_flight = KeyedLocks()
    results = {}

    def lookup(name):
        with open_record_store(db_path) as store:
            cache = CertificationCache(store, psa, clock=clock, in_flight=in_flight)
            results[name] = cache.get_certification("12345678")

    first = threading.Thread(target=lookup, args=("first",))
    first.start()
    assert psa.entered.wait(timeout=5)
    second = threading.Thread(target=lookup, args=("second",))
    second.start()
    psa.release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert len(psa.calls) == 1
    assert results["first"].source == "upstream"
    assert results["second"].source == "cache"


class RecordingLocks(KeyedLocks):
    def __init__(self):
        super().__init__()
        self.keys = []

    def hold(self, key):
        self.keys.append(key)
        return super().hold(key)


def test_cert_and_order_refreshes_use_separate_lock_keys(store, clock):
    in_flight = RecordingLocks()
    psa = FakePsaClient(
        {"123": psa_payload()},
        orders={"123": {"OrderProgress": {"orderNumber": "123"}}},
    )

    CertificationCache(store, psa, clock=clock, in_flight=in_flight).get_certification("123")
    GradingOrderTracker(store, psa, clock=clock, in_flight=in_flight).get_order("user-1", "123")

    assert in_flight.keys == ["cert:123", "order:123"]
