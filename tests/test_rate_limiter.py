import threading
import time

import pytest
from limits.errors import StorageError
from limits.storage import MemoryStorage

from geoip_api.rate_limiter import RateLimiter, build_storage
from tests.common import FakeClock


@pytest.fixture
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Drives both the limiter and the in-memory storage expiry."""
    fake = FakeClock(start=1_700_000_000.0)
    monkeypatch.setattr(time, "time", fake)
    return fake


def test_fourth_request_is_rejected() -> None:
    limiter = RateLimiter(MemoryStorage(), max_attempts=3, decay_minutes=1)

    decisions = [limiter.check("1.2.3.4", "/geoip") for _ in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert [decision.remaining for decision in decisions] == [2, 1, 0, 0]
    assert decisions[-1].limit == 3
    assert 1 <= decisions[-1].retry_after <= 60


def test_limits_are_per_client_and_endpoint() -> None:
    limiter = RateLimiter(MemoryStorage(), max_attempts=1)

    assert limiter.check("1.2.3.4", "/geoip").allowed
    assert not limiter.check("1.2.3.4", "/geoip").allowed
    assert limiter.check("1.2.3.4", "/geoip/stats").allowed
    assert limiter.check("5.6.7.8", "/geoip").allowed


def test_window_resets_after_decay(clock: FakeClock) -> None:
    limiter = RateLimiter(MemoryStorage(), max_attempts=1, decay_minutes=1)

    assert limiter.check("1.2.3.4", "/geoip").allowed
    clock.advance(30)
    rejected = limiter.check("1.2.3.4", "/geoip")
    assert not rejected.allowed
    assert rejected.retry_after == 30
    assert rejected.reset_at == 1_700_000_060

    clock.advance(30)
    assert limiter.check("1.2.3.4", "/geoip").allowed


def test_expired_windows_are_dropped(clock: FakeClock) -> None:
    storage = MemoryStorage()
    limiter = RateLimiter(storage, max_attempts=5)
    for index in range(1000):
        limiter.check(f"10.0.{index // 256}.{index % 256}", "/geoip")
    assert len(storage.storage) == 1000

    clock.advance(10_000)
    limiter.check("192.0.2.1", "/geoip")

    # Expired keys are purged by the storage's background timer.
    deadline = time.monotonic() + 5
    while len(storage.storage) > 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert len(storage.storage) == 1


def test_concurrent_requests_never_exceed_limit() -> None:
    limiter = RateLimiter(MemoryStorage(), max_attempts=25)
    results: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(10):
            allowed = limiter.check("1.2.3.4", "/geoip").allowed
            with lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 80
    assert 0 < results.count(True) <= 25


def test_storage_failure_fails_open(monkeypatch: pytest.MonkeyPatch) -> None:
    storage = MemoryStorage()

    def unreachable(*args, **kwargs) -> int:
        raise StorageError(ConnectionError("connection refused"))

    monkeypatch.setattr(storage, "incr", unreachable)
    limiter = RateLimiter(storage, max_attempts=1)

    for _ in range(3):
        decision = limiter.check("1.2.3.4", "/geoip")
        assert decision.allowed
        assert decision.remaining == 1
        assert decision.retry_after == 60


def test_signature_is_hashed() -> None:
    signature = RateLimiter.signature("1.2.3.4", "/geoip")
    assert signature.startswith("rate_limit:")
    assert "1.2.3.4" not in signature
    assert signature != RateLimiter.signature("1.2.3.4", "/geoip/ipv4")


def test_memory_storage_without_redis_url() -> None:
    assert isinstance(build_storage(None), MemoryStorage)
    assert isinstance(build_storage(""), MemoryStorage)
