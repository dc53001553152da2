from __future__ import annotations

from datetime import datetime

from conftest import FixedClock, RecordingSender, StubFetcher
from weathermail.database import Subscription
from weathermail.scheduler import WeatherScheduler, send_weather_updates


class CityFetcher:
    """Answers for known cities only."""

    def __init__(self, readings):
        self.readings = readings

    def fetch_current(self, city, cancel=None):
        if city not in self.readings:
            return StubFetcher(city, error="city not found").fetch_current(city)
        return self.readings[city]


def make_sub(email: str, city: str, token: str = "tok") -> Subscription:
    return Subscription(
        id=1,
        email=email,
        city=city,
        frequency="hourly",
        confirmed=True,
        confirm_token=None,
        unsubscribe_token=token,
        scheduled_minute=6,
        scheduled_hour=12,
        created_at="2025-06-01 12:00:00",
    )


def test_updates_are_sent_as_one_batch_and_failures_skipped(reading):
    sender = RecordingSender()
    subs = [
        make_sub("ann@example.com", "London", "u-1"),
        make_sub("bob@example.com", "Atlantis", "u-2"),
        make_sub("cy@example.com", "London", "u-3"),
    ]

    sent, skipped = send_weather_updates(subs, CityFetcher({"London": reading}), sender, "http://x/")

    assert (sent, skipped) == (2, 1)
    assert len(sender.batches) == 1
    first = sender.batches[0][0]
    assert first.to == ["ann@example.com"]
    assert first.subject == "Weather update for London"
    assert "Temperature: 18.50&deg;C" in first.body
    assert "Humidity: 59%" in first.body
    assert "Description: Partly cloudy" in first.body
    assert "http://x/api/unsubscribe/u-1" in first.body


def test_nothing_is_sent_for_an_empty_batch(reading):
    sender = RecordingSender()

    assert send_weather_updates([], StubFetcher("w", reading=reading), sender, "http://x") == (0, 0)
    assert sender.batches == []


def test_tick_dispatches_hourly_and_daily_batches_due_now(repository, reading):
    hourly_token, _ = repository.create("h@example.com", "London", "hourly")
    daily_token, _ = repository.create("d@example.com", "London", "daily")
    repository.confirm(hourly_token)
    repository.confirm(daily_token)
    sender = RecordingSender()
    # 12:05:40 + 30s skew lands in the 12:06 slot set by confirm()
    scheduler = WeatherScheduler(
        repository,
        StubFetcher("w", reading=reading),
        sender,
        "http://x",
        clock=FixedClock(datetime(2025, 6, 1, 12, 5, 40)),
    )

    results = scheduler.tick()

    assert [(r.batch, r.due, r.sent) for r in results] == [("hourly", 1, 1), ("daily", 1, 1)]
    assert sorted(m.to[0] for m in sender.messages) == ["d@example.com", "h@example.com"]
    assert scheduler.get_last_results() == results


def test_tick_records_email_failures(repository, reading):
    token, _ = repository.create("h@example.com", "London", "hourly")
    repository.confirm(token)
    scheduler = WeatherScheduler(
        repository,
        StubFetcher("w", reading=reading),
        RecordingSender(fail=True),
        "http://x",
        clock=FixedClock(datetime(2025, 6, 1, 12, 5, 40)),
    )

    hourly, daily = scheduler.tick()

    assert hourly.sent == 0
    assert hourly.error_message == "smtp down"
    assert daily.due == 0 and daily.error_message is None


def test_start_and_stop(repository, reading):
    scheduler = WeatherScheduler(repository, StubFetcher("w", reading=reading), RecordingSender(), "http://x")

    scheduler.start()
    try:
        assert scheduler.is_running
        assert scheduler.scheduler.get_job("dispatch_job") is not None
    finally:
        scheduler.stop()

    assert not scheduler.is_running
