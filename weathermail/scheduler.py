"""
Scheduler module for weathermail.

Wakes every minute, selects the subscriptions whose delivery slot matches
the current time and sends one batch of weather update emails:
- Hourly subscriptions match on minute
- Daily subscriptions match on hour and minute
"""

import logging
import os
import signal
import threading
from typing import Callable, List, Optional, Sequence
from datetime import datetime, timedelta
from dataclasses import dataclass

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Config, ConfigError
from .database import Subscription, SubscriptionRepository
from .fetcher import FetchError, Fetcher
from .mailer import EmailError, EmailMessage, SMTPSender
from .weather import build_caching_fetcher

logger = logging.getLogger(__name__)

# Shift the tick time so a job firing at 12:05:59.999 still counts as 12:06
TICK_SKEW = timedelta(seconds=30)

UPDATE_BODY = """<p>Current weather in <b>{city}</b>:</p>
<ul>
  <li>Temperature: {temperature:.2f}&deg;C</li>
  <li>Humidity: {humidity}%</li>
  <li>Description: {description}</li>
</ul>
<p><a href="{unsubscribe_url}">Unsubscribe</a> from these updates.</p>"""


@dataclass
class DispatchResult:
    """Outcome of one batch for one tick."""
    batch: str
    due: int
    sent: int
    skipped: int
    error_message: Optional[str]


def send_weather_updates(
    subs: Sequence[Subscription],
    fetcher: Fetcher,
    sender: SMTPSender,
    base_url: str,
) -> tuple:
    """
    Fetch weather for each subscription and send all emails in one batch.

    Subscriptions whose weather cannot be fetched are skipped. Returns
    (sent, skipped).
    """
    if not subs:
        return 0, 0

    messages = []
    skipped = 0
    for sub in subs:
        try:
            reading = fetcher.fetch_current(sub.city)
        except FetchError as e:
            logger.error(f"Weather fetch failed for {sub.email} ({sub.city}): {e}")
            skipped += 1
            continue

        body = UPDATE_BODY.format(
            city=sub.city,
            temperature=reading.temperature,
            humidity=reading.humidity,
            description=reading.description,
            unsubscribe_url=f"{base_url.rstrip('/')}/api/unsubscribe/{sub.unsubscribe_token}",
        )
        messages.append(EmailMessage(
            to=[sub.email],
            subject=f"Weather update for {sub.city}",
            body=body,
        ))

    if not messages:
        return 0, skipped

    sender.send_batch(messages)
    logger.info(f"Sent weather update emails: {len(messages)}")
    return len(messages), skipped


class WeatherScheduler:
    """
    Runs the per-minute dispatch job on an APScheduler background thread.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        fetcher: Fetcher,
        sender: SMTPSender,
        base_url: str,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.repository = repository
        self.fetcher = fetcher
        self.sender = sender
        self.base_url = base_url
        self._clock = clock
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self._is_running = False
        self._last_results: List[DispatchResult] = []

    def tick(self) -> List[DispatchResult]:
        """Dispatch the hourly and daily batches due now."""
        now = self._clock() + TICK_SKEW
        results = [
            self._dispatch("hourly", lambda: self.repository.hourly_batch(now.minute)),
            self._dispatch("daily", lambda: self.repository.daily_batch(now.hour, now.minute)),
        ]
        self._last_results = results
        return results

    def _dispatch(self, batch: str, select: Callable[[], List[Subscription]]) -> DispatchResult:
        try:
            subs = select()
        except Exception as e:
            logger.error(f"Failed to fetch {batch} subscriptions: {e}")
            return DispatchResult(batch, 0, 0, 0, str(e))

        try:
            sent, skipped = send_weather_updates(subs, self.fetcher, self.sender, self.base_url)
        except EmailError as e:
            logger.error(f"Failed to send {batch} weather update emails: {e}")
            return DispatchResult(batch, len(subs), 0, len(subs), str(e))

        return DispatchResult(batch, len(subs), sent, skipped, None)

    def start(self) -> None:
        """Start the scheduler."""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.add_job(
            self.tick,
            trigger=CronTrigger(second=0, timezone="UTC"),
            id='dispatch_job',
            name='Weather update dispatch',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True

        logger.info("Scheduler started: dispatch every minute")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._is_running:
            return
        self.scheduler.shutdown(wait=True)
        self._is_running = False
        logger.info("Scheduler stopped")

    def get_last_results(self) -> List[DispatchResult]:
        return list(self._last_results)

    @property
    def is_running(self) -> bool:
        return self._is_running


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = Config.from_env()
        fetcher = build_caching_fetcher(config)
    except (ConfigError, FetchError) as e:
        logger.critical(f"Startup failed: {e}")
        raise SystemExit(1)

    repository = SubscriptionRepository(config.database_path)
    scheduler = WeatherScheduler(
        repository=repository,
        fetcher=fetcher,
        sender=SMTPSender.from_config(config),
        base_url=config.base_url,
    )

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    scheduler.start()
    stop.wait()

    scheduler.stop()
    repository.close()


if __name__ == "__main__":
    main()
