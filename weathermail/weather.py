"""
Composition root for the weather fetcher.

Builds the provider clients that have credentials, races them, and puts a
Redis cache in front. Both the API and the scheduler call
build_caching_fetcher() once at startup and share the result.
"""

import logging
from typing import List, Optional

import redis

from .cache import CACHE_TTL_SECONDS, CachingFetcher
from .config import Config
from .fetcher import (
    ConfigurationError,
    Fetcher,
    OpenWeatherMapClient,
    ProviderNotConfigured,
    WeatherAPIClient,
)
from .race import RaceFetcher

logger = logging.getLogger(__name__)

REDIS_CONNECT_TIMEOUT = 2.0  # seconds
REDIS_SOCKET_TIMEOUT = 2.0


def build_providers(config: Config) -> List[Fetcher]:
    """Construct every provider client whose API key is configured."""
    providers: List[Fetcher] = []
    errors: List[str] = []

    candidates = (
        (OpenWeatherMapClient, config.openweathermap_org_key),
        (WeatherAPIClient, config.weatherapi_com_key),
    )
    for client_cls, api_key in candidates:
        try:
            providers.append(client_cls(api_key))
        except ProviderNotConfigured as e:
            logger.warning(f"{client_cls.name} client not configured: {e}")
            errors.append(str(e))

    if not providers:
        raise ConfigurationError(f"no weather providers available: {'; '.join(errors)}")

    logger.info(f"Weather providers enabled: {', '.join(p.name for p in providers)}")
    return providers


def connect_redis(config: Config) -> redis.Redis:
    return redis.Redis(
        host=config.redis_host,
        port=config.redis_port,
        password=config.redis_password or None,
        db=0,
        socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
    )


def build_caching_fetcher(config: Config, redis_client: Optional[redis.Redis] = None) -> CachingFetcher:
    """
    Construct a Fetcher that:
    1) builds the concrete provider clients (OpenWeatherMap, WeatherAPI.com)
    2) wraps them in a concurrent race-to-first fetcher
    3) decorates that with a Redis cache (5 minute TTL)

    Raises ConfigurationError when no provider has credentials or Redis
    does not answer PING.
    """
    providers = build_providers(config)
    base = RaceFetcher(providers)

    client = redis_client if redis_client is not None else connect_redis(config)
    try:
        client.ping()
    except redis.RedisError as e:
        base.close()
        raise ConfigurationError(f"redis ping failed: {e}") from e

    return CachingFetcher(base, client, ttl=CACHE_TTL_SECONDS)
