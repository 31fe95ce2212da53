from abc import ABC, abstractmethod
from typing import Optional

import requests
import structlog

from .config import TwilioSettings
from .service import ExternalDependencyError

logger = structlog.get_logger(__name__)


class Notifier(ABC):
    """Fire-and-forget outbound messaging."""

    @abstractmethod
    def send(self, destination: str, message: str) -> bool:
        """
        Deliver ``message`` to ``destination``.

        Returns True when the gateway accepted the message, False when the
        notifier is not able to deliver at all. Raises ExternalDependencyError
        when the gateway was tried and failed.
        """


class NullNotifier(Notifier):
    def send(self, destination: str, message: str) -> bool:
        logger.info("notifier_not_configured", destination=destination)
        return False


class TwilioNotifier(Notifier):
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(self, settings: TwilioSettings, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.settings = settings
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, destination: str, message: str) -> bool:
        url = f"{self.settings.api_base}/Accounts/{self.settings.account_sid}/Messages.json"
        try:
            response = self.session.post(
                url,
                data={"To": destination, "From": self.settings.phone_number, "Body": message},
                auth=(self.settings.account_sid, self.settings.auth_token),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ExternalDependencyError(f"SMS gateway error: {e}") from e

        # Accepted by the gateway even when the receipt body is unreadable.
        try:
            sid = response.json().get("sid")
        except (ValueError, AttributeError):
            sid = None
        logger.info("sms_sent", destination=destination, sid=sid)
        return True


def build_notifier(settings: TwilioSettings) -> Notifier:
    if settings.is_configured:
        return TwilioNotifier(settings)
    return NullNotifier()
