"""
Race-to-first weather fetcher.

Queries every configured provider concurrently and keeps the first
successful reading. Slower providers are told to stop through a per-call
cancellation token; their late results are dropped.
"""

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .fetcher import (
    CancelToken,
    Fetcher,
    FetchError,
    NoProvidersConfigured,
    WeatherReading,
)

logger = logging.getLogger(__name__)

MAX_WORKERS_PER_PROVIDER = 8


class AllProvidersFailed(FetchError):
    """Every provider failed for one call; carries the individual failures."""

    def __init__(self, failures: Sequence[Exception]):
        self.failures = list(failures)
        super().__init__("all providers failed: " + "; ".join(str(f) for f in self.failures))


class RaceFetcher:
    """
    Runs all its fetchers in parallel and returns the first success.

    Provider order carries no preference; the fastest success wins. Losers
    are not awaited: they observe the cancelled token and finish on their
    own worker thread, bounded by the executor size.
    """

    def __init__(self, fetchers: Sequence[Fetcher], max_workers: Optional[int] = None):
        self._fetchers: List[Fetcher] = list(fetchers)
        self._executor: Optional[ThreadPoolExecutor] = None
        if len(self._fetchers) > 1:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers or len(self._fetchers) * MAX_WORKERS_PER_PROVIDER,
                thread_name_prefix="weather-race",
            )

    @property
    def fetchers(self) -> List[Fetcher]:
        return list(self._fetchers)

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        if not self._fetchers:
            err = NoProvidersConfigured("no weather providers configured")
            logger.error(f"Weather fetch impossible: {err}")
            raise err

        if len(self._fetchers) == 1:
            return self._fetchers[0].fetch_current(city, cancel)

        call_token = cancel.child() if cancel is not None else CancelToken()
        results: "queue.Queue" = queue.Queue(maxsize=len(self._fetchers))

        for fetcher in self._fetchers:
            self._executor.submit(self._run_one, fetcher, city, call_token, results)

        failures = []
        try:
            for _ in range(len(self._fetchers)):
                reading, error = results.get()
                if error is None:
                    logger.info(
                        f"Using weather for {city}: {reading.temperature}C, "
                        f"{reading.humidity}%, {reading.description}"
                    )
                    return reading
                failures.append(error)
        finally:
            # stops the losers and unhooks this call from the caller's token
            call_token.cancel()

        agg = AllProvidersFailed(failures)
        logger.error(f"Weather fetch failed: {agg}")
        raise agg

    @staticmethod
    def _run_one(fetcher: Fetcher, city: str, token: CancelToken, results: "queue.Queue") -> None:
        try:
            reading = fetcher.fetch_current(city, token)
        except Exception as e:
            logger.debug(f"Weather fetcher {fetcher!r} failed or cancelled: {e}")
            results.put((None, e))
            return
        logger.debug(
            f"Weather fetcher {fetcher!r} succeeded: {reading.temperature}C, "
            f"{reading.humidity}%, {reading.description}"
        )
        results.put((reading, None))

    def close(self) -> None:
        """Stop accepting races; in-flight losers are left to finish."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
