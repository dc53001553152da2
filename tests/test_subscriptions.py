from __future__ import annotations

import uuid

import pytest

from conftest import StubFetcher
from weathermail.subscriptions import (
    AlreadySubscribed,
    InvalidCity,
    InvalidToken,
    SubscriptionService,
    TokenNotFound,
)


@pytest.fixture()
def service(repository, sender, reading):
    return SubscriptionService(
        repository=repository,
        sender=sender,
        fetcher=StubFetcher("weather", reading=reading),
        base_url="http://localhost:8080/",
    )


def test_subscribe_sends_confirmation_with_both_links(service, repository, sender):
    service.subscribe("ann@example.com", "Kyiv", "daily")

    sub = repository.get_by_email("ann@example.com")
    [message] = sender.messages
    assert message.to == ["ann@example.com"]
    assert message.subject == "Confirm your weather subscription"
    assert f"http://localhost:8080/api/confirm/{sub.confirm_token}" in message.body
    assert f"http://localhost:8080/api/unsubscribe/{sub.unsubscribe_token}" in message.body
    assert "<b>Kyiv</b>" in message.body


def test_subscribe_rejects_city_without_weather(repository, sender):
    service = SubscriptionService(
        repository, sender, StubFetcher("weather", error="city not found"), "http://x"
    )

    with pytest.raises(InvalidCity):
        service.subscribe("ann@example.com", "Atlantis", "hourly")

    assert repository.count() == 0
    assert sender.batches == []


def test_subscribe_twice_is_already_subscribed(service):
    service.subscribe("ann@example.com", "Kyiv", "daily")

    with pytest.raises(AlreadySubscribed):
        service.subscribe("ann@example.com", "Kyiv", "hourly")


def test_confirm_and_unsubscribe_round_trip(service, repository):
    service.subscribe("ann@example.com", "Kyiv", "daily")
    sub = repository.get_by_email("ann@example.com")

    service.confirm(sub.confirm_token)
    assert repository.get_by_email("ann@example.com").confirmed

    service.unsubscribe(sub.unsubscribe_token)
    assert repository.get_by_email("ann@example.com") is None


@pytest.mark.parametrize("token", ["", "not-a-uuid", "1234"])
def test_malformed_tokens_are_invalid(service, token):
    with pytest.raises(InvalidToken):
        service.confirm(token)
    with pytest.raises(InvalidToken):
        service.unsubscribe(token)


def test_unknown_tokens_are_not_found(service):
    with pytest.raises(TokenNotFound):
        service.confirm(str(uuid.uuid4()))
    with pytest.raises(TokenNotFound):
        service.unsubscribe(str(uuid.uuid4()))
