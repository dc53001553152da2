"""
Weather provider clients for the weathermail application.

Translates a city name into a normalized WeatherReading using one of two
independent HTTP providers:
- OpenWeatherMap (current weather, metric units requested explicitly)
- WeatherAPI.com (current conditions, Celsius natively)

Every client satisfies the same Fetcher protocol, so clients, the race
fetcher and the cache decorator can wrap one another uniformly.
"""

import json
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

# Configuration constants
DEFAULT_TIMEOUT = (3.05, 10)  # (connect, read) seconds
CHUNK_SIZE = 4096
USER_AGENT = "weathermail/1.0"

OPENWEATHERMAP_URL = "https://api.openweathermap.org/data/2.5/weather"
WEATHERAPI_URL = "https://api.weatherapi.com/v1/current.json"


# =============================================================================
# Data Model
# =============================================================================

@dataclass(frozen=True)
class WeatherReading:
    """Current weather for a city, normalized across providers."""
    temperature: float   # degrees Celsius
    humidity: int        # percent, 0-100
    description: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "WeatherReading":
        """Rebuild a reading from its serialized form.

        Raises ValueError when the payload is not a well-formed reading.
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("serialized reading is not an object")

        temperature = data.get("temperature")
        humidity = data.get("humidity")
        description = data.get("description")

        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise ValueError(f"invalid temperature: {temperature!r}")
        if isinstance(humidity, bool) or not isinstance(humidity, int):
            raise ValueError(f"invalid humidity: {humidity!r}")
        if not isinstance(description, str):
            raise ValueError(f"invalid description: {description!r}")

        return cls(temperature=float(temperature), humidity=humidity, description=description)


# =============================================================================
# Errors
# =============================================================================

class FetchError(Exception):
    """Base exception for weather fetching errors."""
    pass


class ConfigurationError(FetchError):
    """The fetcher cannot be composed into a usable state."""
    pass


class NoProvidersConfigured(ConfigurationError):
    """Raised when a race is attempted without any provider."""
    pass


class ProviderNotConfigured(ConfigurationError):
    """Raised at construction time when a provider lacks its API key."""
    pass


class ProviderFailure(FetchError):
    """A single provider could not produce a reading."""

    def __init__(self, provider: str, cause: str, status: Optional[int] = None):
        self.provider = provider
        self.cause = cause
        self.status = status
        super().__init__(f"{provider}: {cause}")


class FetchCancelled(ProviderFailure):
    """The provider call was abandoned because its token was cancelled."""

    def __init__(self, provider: str):
        super().__init__(provider, "request cancelled")


# =============================================================================
# Cancellation
# =============================================================================

class CancelToken:
    """
    Cooperative cancellation signal shared between a caller and its workers.

    A token created with a parent is cancelled as soon as the parent is.
    Cancelling a child never affects the parent. Callbacks registered with
    add_callback() run once, on the cancelling thread, and must not block.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._parent = parent
        if parent is not None:
            parent.add_callback(self.cancel)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation, or right away if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        if self._parent is not None:
            self._parent.remove_callback(self.cancel)
        for callback in callbacks:
            callback()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class Fetcher(Protocol):
    """Anything that can look up current weather for a city."""

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        ...


# =============================================================================
# Provider Clients
# =============================================================================

class ProviderClient:
    """
    Base class for HTTP weather providers.

    Subclasses supply the request parameters and the payload mapping; the
    base handles transport, status checks, cancellation and JSON decoding.
    """

    name = "provider"
    url = ""

    def __init__(
        self,
        api_key: Optional[str],
        session: Optional[requests.Session] = None,
        timeout=DEFAULT_TIMEOUT,
    ):
        if not api_key:
            raise ProviderNotConfigured(f"{self.name}: API key is not set")
        self._api_key = api_key
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create HTTP session that sends exactly one GET per fetch."""
        session = requests.Session()

        # no urllib3 retries: a retry would be a second outbound request
        retry_strategy = Retry(total=0, redirect=0, raise_on_status=False)

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        })

        return session

    def fetch_current(self, city: str, cancel: Optional[CancelToken] = None) -> WeatherReading:
        payload = self._get_json(self._params(city), cancel)
        return self._parse(payload)

    def _params(self, city: str) -> Dict[str, str]:
        raise NotImplementedError

    def _parse(self, payload: Dict[str, Any]) -> WeatherReading:
        raise NotImplementedError

    def _check_cancelled(self, cancel: Optional[CancelToken]) -> None:
        if cancel is not None and cancel.cancelled:
            raise FetchCancelled(self.name)

    def _get_json(self, params: Dict[str, str], cancel: Optional[CancelToken]) -> Any:
        """
        Perform the GET and decode its JSON body.

        With a token, the request runs on its own daemon thread and the caller
        waits for either the outcome or cancellation, so a cancel releases the
        caller at once even while the server is holding back its headers. The
        abandoned request stops at its next cancellation check and closes its
        response; until then it is bounded by the session timeout.
        """
        self._check_cancelled(cancel)
        if cancel is None:
            return self._request(params, None)

        outcome: Dict[str, Any] = {}
        wake = threading.Event()

        def run():
            try:
                outcome["payload"] = self._request(params, cancel)
            except Exception as e:
                outcome["error"] = e
            finally:
                wake.set()

        cancel.add_callback(wake.set)
        try:
            threading.Thread(target=run, name=f"{self.name}-request", daemon=True).start()
            wake.wait()
        finally:
            cancel.remove_callback(wake.set)

        if "payload" in outcome:
            return outcome["payload"]
        if cancel.cancelled:
            logger.debug(f"{self.name}: request abandoned after cancellation")
            raise FetchCancelled(self.name)
        raise outcome["error"]

    def _request(self, params: Dict[str, str], cancel: Optional[CancelToken]) -> Any:
        """Issue the single GET, reading the body in chunks so cancellation is observed."""
        try:
            response = self._session.get(self.url, params=params, timeout=self.timeout, stream=True)
        except requests.Timeout:
            raise ProviderFailure(self.name, "request timed out")
        except requests.RequestException as e:
            raise ProviderFailure(self.name, f"HTTP request failed: {e}")

        try:
            self._check_cancelled(cancel)

            if not 200 <= response.status_code < 300:
                raise ProviderFailure(
                    self.name,
                    f"unexpected status {response.status_code} {response.reason or ''}".rstrip(),
                    status=response.status_code,
                )

            body = bytearray()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                self._check_cancelled(cancel)
                body.extend(chunk)
        except requests.RequestException as e:
            self._check_cancelled(cancel)
            raise ProviderFailure(self.name, f"reading response failed: {e}")
        finally:
            response.close()

        try:
            return json.loads(bytes(body))
        except ValueError as e:
            raise ProviderFailure(self.name, f"malformed payload: {e}")

    def close(self) -> None:
        """Close HTTP session."""
        self._session.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class OpenWeatherMapClient(ProviderClient):
    """Client for the OpenWeatherMap current weather endpoint."""

    name = "openweathermap"
    url = OPENWEATHERMAP_URL

    def _params(self, city: str) -> Dict[str, str]:
        return {"q": city, "appid": self._api_key, "units": "metric"}

    def _parse(self, payload: Dict[str, Any]) -> WeatherReading:
        try:
            conditions = payload.get("weather") or []
            if not conditions:
                raise ProviderFailure(self.name, "no weather data in response")
            main = payload["main"]
            return WeatherReading(
                temperature=float(main["temp"]),
                humidity=int(main["humidity"]),
                description=str(conditions[0]["description"]),
            )
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderFailure(self.name, f"malformed payload: {e!r}")


class WeatherAPIClient(ProviderClient):
    """Client for the WeatherAPI.com current.json endpoint."""

    name = "weatherapi"
    url = WEATHERAPI_URL

    def _params(self, city: str) -> Dict[str, str]:
        return {"key": self._api_key, "q": city, "aqi": "no"}

    def _parse(self, payload: Dict[str, Any]) -> WeatherReading:
        try:
            current = payload.get("current")
            if not current:
                raise ProviderFailure(self.name, "no weather data in response")
            return WeatherReading(
                temperature=float(current["temp_c"]),
                humidity=int(current["humidity"]),
                description=str(current["condition"]["text"]),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProviderFailure(self.name, f"malformed payload: {e!r}")
