"""
Subscription business operations: subscribe, confirm, unsubscribe.
"""

import logging
import uuid
from typing import Optional

from .database import EmailAlreadyExists, SubscriptionNotFound, SubscriptionRepository
from .fetcher import CancelToken, Fetcher, FetchError
from .mailer import EmailMessage, SMTPSender

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Base exception for subscription operations."""
    pass


class InvalidCity(SubscriptionError):
    def __init__(self, city: str = ""):
        super().__init__("invalid city")
        self.city = city


class AlreadySubscribed(SubscriptionError):
    def __init__(self):
        super().__init__("email already subscribed for this city")


class InvalidToken(SubscriptionError):
    def __init__(self):
        super().__init__("invalid token format")


class TokenNotFound(SubscriptionError):
    def __init__(self):
        super().__init__("subscription not found for this token")


CONFIRM_BODY = """<p>Please confirm your subscription for <b>{city}</b> weather updates:</p>
<p><a href="{confirm_url}">Confirm Subscription</a></p>
<p><a href="{unsubscribe_url}">Unsubscribe</a></p>"""


def _parse_token(token: str) -> str:
    try:
        return str(uuid.UUID(token))
    except (ValueError, AttributeError, TypeError):
        raise InvalidToken()


class SubscriptionService:
    def __init__(
        self,
        repository: SubscriptionRepository,
        sender: SMTPSender,
        fetcher: Fetcher,
        base_url: str,
    ):
        self.repository = repository
        self.sender = sender
        self.fetcher = fetcher
        self.base_url = base_url.rstrip("/")

    def confirm_url(self, token: str) -> str:
        return f"{self.base_url}/api/confirm/{token}"

    def unsubscribe_url(self, token: str) -> str:
        return f"{self.base_url}/api/unsubscribe/{token}"

    def _validate_city(self, city: str, cancel: Optional[CancelToken]) -> None:
        """A city is valid if at least one provider can report its weather."""
        try:
            self.fetcher.fetch_current(city, cancel)
        except FetchError as e:
            logger.info(f"Rejecting city {city!r}: {e}")
            raise InvalidCity(city) from e

    def subscribe(self, email: str, city: str, frequency: str, cancel: Optional[CancelToken] = None) -> None:
        """Create an unconfirmed subscription and send the confirmation email."""
        self._validate_city(city, cancel)

        try:
            confirm_token, unsubscribe_token = self.repository.create(email, city, frequency)
        except EmailAlreadyExists:
            raise AlreadySubscribed()

        body = CONFIRM_BODY.format(
            city=city,
            confirm_url=self.confirm_url(confirm_token),
            unsubscribe_url=self.unsubscribe_url(unsubscribe_token),
        )
        self.sender.send_batch([
            EmailMessage(to=[email], subject="Confirm your weather subscription", body=body)
        ])

        logger.info(f"Confirmation email sent to {email}")

    def confirm(self, token: str) -> None:
        parsed = _parse_token(token)
        try:
            self.repository.confirm(parsed)
        except SubscriptionNotFound:
            raise TokenNotFound()

    def unsubscribe(self, token: str) -> None:
        parsed = _parse_token(token)
        try:
            self.repository.delete_by_unsubscribe_token(parsed)
        except SubscriptionNotFound:
            raise TokenNotFound()
