from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import pytest
import redis

from weathermail.config import Config
from weathermail.database import SubscriptionRepository
from weathermail.fetcher import CancelToken, FetchCancelled, ProviderFailure, WeatherReading
from weathermail.mailer import EmailError, EmailMessage


class FakeRedis:
    """In-memory stand-in for the few redis.Redis calls the app makes."""

    def __init__(self, time_func=time.monotonic) -> None:
        self._time_func = time_func
        self._storage: Dict[str, Tuple[Optional[float], bytes]] = {}
        self.fail_get = False
        self.fail_set = False
        self.fail_ping = False
        self.ttls: Dict[str, Optional[int]] = {}

    def ping(self) -> bool:
        if self.fail_ping:
            raise redis.ConnectionError("connection refused")
        return True

    def get(self, key: str) -> Optional[bytes]:
        if self.fail_get:
            raise redis.ConnectionError("connection reset")
        item = self._storage.get(key)
        if not item:
            return None
        expires_at, value = item
        if expires_at is not None and expires_at < self._time_func():
            self._storage.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        if self.fail_set:
            raise redis.ConnectionError("connection reset")
        if isinstance(value, str):
            value = value.encode("utf-8")
        expires_at = self._time_func() + ex if ex is not None else None
        self._storage[key] = (expires_at, value)
        self.ttls[key] = ex
        return True


class StubFetcher:
    """Fetcher double: returns a reading or raises, optionally after a delay."""

    def __init__(
        self,
        name: str,
        reading: Optional[WeatherReading] = None,
        error: Optional[str] = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.reading = reading
        self.error = error
        self.delay = delay
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        with self._lock:
            self.calls.append(city)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise ProviderFailure(self.name, self.error)
        return self.reading

    def __repr__(self) -> str:
        return f"StubFetcher({self.name})"


class HangingFetcher:
    """Blocks until its cancellation token fires, then reports cancellation."""

    def __init__(self, name: str = "hanging", max_wait: float = 5.0) -> None:
        self.name = name
        self.max_wait = max_wait
        self.started = threading.Event()
        self.cancelled = threading.Event()

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        self.started.set()
        deadline = time.monotonic() + self.max_wait
        while time.monotonic() < deadline:
            if cancel is not None and cancel.cancelled:
                self.cancelled.set()
                raise FetchCancelled(self.name)
            time.sleep(0.005)
        raise ProviderFailure(self.name, "never cancelled")


class RecordingSender:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: List[List[EmailMessage]] = []

    def send_batch(self, messages) -> None:
        if self.fail:
            raise EmailError("smtp down")
        self.batches.append(list(messages))

    @property
    def messages(self) -> List[EmailMessage]:
        return [m for batch in self.batches for m in batch]


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def reading() -> WeatherReading:
    return WeatherReading(temperature=18.5, humidity=59, description="Partly cloudy")


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 6, 1, 12, 5, 10))


@pytest.fixture()
def repository(tmp_path, clock):
    repo = SubscriptionRepository(str(tmp_path / "subs.db"), clock=clock)
    yield repo
    repo.close()


@pytest.fixture()
def config(tmp_path) -> Config:
    return Config.from_env({
        "DATABASE_PATH": str(tmp_path / "weather.db"),
        "SMTP_HOST": "smtp.example.com",
        "SMTP_PORT": "587",
        "SMTP_USER": "mailer@example.com",
        "SMTP_PASS": "secret",
        "OPENWEATHERMAP_ORG_API_KEY": "owm-key",
        "WEATHERAPI_COM_API_KEY": "wapi-key",
        "REDIS_PASSWORD": "redis-pass",
        "REDIS_ADDR": "localhost:6380",
        "BASE_URL": "http://localhost:8080/",
    })
