"""
Weather Subscription Application

Email weather updates for a city with:
- Double opt-in subscriptions (SQLite persistence)
- Race-to-first fetching across two weather providers
- Redis read-through cache shared by API and scheduler
- Minute-staggered hourly/daily dispatch
"""

from .fetcher import (
    CancelToken,
    ConfigurationError,
    FetchCancelled,
    FetchError,
    NoProvidersConfigured,
    OpenWeatherMapClient,
    ProviderFailure,
    ProviderNotConfigured,
    WeatherAPIClient,
    WeatherReading,
)
from .race import AllProvidersFailed, RaceFetcher
from .cache import CachingFetcher
from .weather import build_caching_fetcher

__version__ = "1.0.0"

__all__ = [
    "CancelToken",
    "ConfigurationError",
    "FetchCancelled",
    "FetchError",
    "NoProvidersConfigured",
    "OpenWeatherMapClient",
    "ProviderFailure",
    "ProviderNotConfigured",
    "WeatherAPIClient",
    "WeatherReading",
    "AllProvidersFailed",
    "RaceFetcher",
    "CachingFetcher",
    "build_caching_fetcher",
]
