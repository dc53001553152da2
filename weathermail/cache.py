"""
Redis cache decorator for weather fetchers.

Looks a city up in Redis before delegating to the wrapped fetcher, and
writes successful readings back with a fixed TTL. The cache is strictly
best effort: read and write problems are logged, never raised.
"""

import logging
from typing import Optional

import redis

from .fetcher import CancelToken, Fetcher, WeatherReading

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "weather:"
CACHE_TTL_SECONDS = 5 * 60


def cache_key(city: str) -> str:
    return CACHE_KEY_PREFIX + city


class CachingFetcher:
    """Decorates another Fetcher with a Redis read-through/write-through cache."""

    def __init__(self, inner: Fetcher, client: redis.Redis, ttl: int = CACHE_TTL_SECONDS):
        self.inner = inner
        self.client = client
        self.ttl = ttl

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        key = cache_key(city)

        cached = self._read(key)
        if cached is not None:
            logger.debug(f"Cache hit for {city}")
            return cached

        reading = self.inner.fetch_current(city, cancel)
        self._write(key, reading)
        return reading

    def _read(self, key: str) -> Optional[WeatherReading]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET {key} failed: {e}")
            return None

        if raw is None:
            return None

        try:
            return WeatherReading.from_json(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cached value for {key} could not be decoded: {e}")
            return None

    def _write(self, key: str, reading: WeatherReading) -> None:
        try:
            blob = reading.to_json()
        except (TypeError, ValueError) as e:
            logger.warning(f"Serializing reading for {key} failed: {e}")
            return

        try:
            self.client.set(key, blob, ex=self.ttl)
        except redis.RedisError as e:
            logger.warning(f"Redis SET {key} failed: {e}")
