"""Reminder delivery to farm staff.

A Notifier takes a set of recipients and one message and reports, per
recipient, whether delivery worked.  One recipient failing never stops the
message going out to the others.

Backends:
  - LogNotifier        writes reminders to the log (default, development)
  - TwilioSmsNotifier  one SMS per recipient through the Twilio REST API
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

from microfarm.config import Settings, settings

logger = logging.getLogger("microfarm.notifications")


@dataclass
class DeliveryResult:
    recipient: str
    ok: bool
    error: str | None = None


class Notifier(Protocol):
    async def send(self, recipients: Sequence[str], message: str) -> list[DeliveryResult]: ...


class LogNotifier:
    async def send(self, recipients: Sequence[str], message: str) -> list[DeliveryResult]:
        if not recipients:
            logger.info("Reminder: %s", message)
            return [DeliveryResult(recipient="log", ok=True)]
        for recipient in recipients:
            logger.info("Reminder to %s: %s", recipient, message)
        return [DeliveryResult(recipient=r, ok=True) for r in recipients]


class TwilioSmsNotifier:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, client=None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = client

    def _get_client(self):
        if self._client is None:
            from twilio.rest import Client
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def _send_one(self, recipient: str, message: str) -> None:
        self._get_client().messages.create(
            body=message,
            from_=self.from_number,
            to=recipient,
        )

    async def send(self, recipients: Sequence[str], message: str) -> list[DeliveryResult]:
        results = []
        for recipient in recipients:
            try:
                await asyncio.to_thread(self._send_one, recipient, message)
                results.append(DeliveryResult(recipient=recipient, ok=True))
            except Exception as exc:
                logger.warning("SMS to %s failed: %s", recipient, exc)
                results.append(DeliveryResult(recipient=recipient, ok=False, error=str(exc)))
        return results


async def notify(
    notifier: Notifier,
    recipients: Sequence[str],
    message: str,
) -> list[DeliveryResult]:
    """Send through ``notifier``; a backend blowing up counts as failure for everyone."""
    try:
        return await notifier.send(list(recipients), message)
    except Exception as exc:
        logger.exception("Notifier %s failed", type(notifier).__name__)
        return [
            DeliveryResult(recipient=r, ok=False, error=str(exc))
            for r in (recipients or ["log"])
        ]


def get_notifier(config: Settings = settings) -> Notifier:
    if config.notification_backend == "twilio" and config.twilio_account_sid:
        return TwilioSmsNotifier(
            config.twilio_account_sid,
            config.twilio_auth_token,
            config.twilio_from_number,
        )
    return LogNotifier()
