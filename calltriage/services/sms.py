"""
CallTriage - SMS Gateway

Outbound SMS used by the alert fan-out.

Architecture:
    - Protocol defines the send interface
    - DummySMSGateway: logs and keeps an in-memory outbox (default)
    - TwilioSMSGateway: Twilio REST API, run in a worker thread

Gateways raise DeliveryFailure on any send error. Timeouts are applied by
the caller.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from calltriage.config import Settings
from calltriage.core.exceptions import ConfigurationError, DeliveryFailure
from calltriage.core.types import new_id, utcnow
from calltriage.telephony.privacy import mask_phone_number, normalize_phone_number, to_e164

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SMSReceipt:
    message_id: str
    provider: str


@runtime_checkable
class SMSGateway(Protocol):
    """Protocol for outbound SMS delivery."""

    @abstractmethod
    async def send(self, to: str, body: str) -> SMSReceipt:
        """
        Send one message.

        Raises:
            DeliveryFailure: the provider rejected the message or errored
        """
        ...

    @property
    @abstractmethod
    def provider(self) -> str:
        ...


# =============================================================================
# Dummy Implementation
# =============================================================================

@dataclass(frozen=True)
class OutboxMessage:
    to: str
    body: str
    message_id: str
    sent_at: datetime = field(default_factory=utcnow)


class DummySMSGateway:
    """
    Development gateway: never leaves the process.

    Numbers listed in ``fail_numbers`` are rejected, which lets drills and
    tests exercise partial delivery failure.
    """

    def __init__(self, fail_numbers: Iterable[str] = (), latency_seconds: float = 0.0):
        self._fail = {normalize_phone_number(n) for n in fail_numbers if normalize_phone_number(n)}
        self._latency = latency_seconds
        self._lock = Lock()
        self._outbox: List[OutboxMessage] = []

    @property
    def provider(self) -> str:
        return "dummy"

    @property
    def outbox(self) -> List[OutboxMessage]:
        with self._lock:
            return list(self._outbox)

    def fail_for(self, number: str) -> None:
        self._fail.add(normalize_phone_number(number))

    async def send(self, to: str, body: str) -> SMSReceipt:
        if self._latency:
            await asyncio.sleep(self._latency)

        if normalize_phone_number(to) in self._fail:
            raise DeliveryFailure(
                f"Gateway rejected message to {mask_phone_number(to)}",
                details={"provider": self.provider},
            )

        message_id = new_id("sms")
        with self._lock:
            self._outbox.append(OutboxMessage(to=to, body=body, message_id=message_id))
        logger.info("DummySMSGateway: queued %s to %s", message_id, mask_phone_number(to))
        return SMSReceipt(message_id=message_id, provider=self.provider)


# =============================================================================
# Twilio Implementation
# =============================================================================

class TwilioSMSGateway:
    """
    Twilio-backed gateway. The Twilio client is synchronous, so each send
    runs in a worker thread.

    A caller that times out on send() cannot stop the thread: the request
    may still reach Twilio and the message may be delivered after the
    attempt was recorded as failed.
    """

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Client] = None):
        if not from_number:
            raise ConfigurationError("TWILIO_FROM_NUMBER is required for the twilio SMS backend")
        self._client = client or Client(account_sid, auth_token)
        self._from = from_number

    @property
    def provider(self) -> str:
        return "twilio"

    async def send(self, to: str, body: str) -> SMSReceipt:
        destination = to_e164(to)
        if destination is None:
            raise DeliveryFailure(f"Invalid destination {mask_phone_number(to)}")

        try:
            message = await asyncio.to_thread(
                self._client.messages.create,
                to=destination,
                from_=self._from,
                body=body,
            )
        except TwilioException as e:
            raise DeliveryFailure(
                f"Twilio send to {mask_phone_number(to)} failed: {e}",
                details={"provider": self.provider},
            ) from e

        logger.info("Twilio message %s accepted for %s", message.sid, mask_phone_number(to))
        return SMSReceipt(message_id=message.sid, provider=self.provider)


# =============================================================================
# Factory Function
# =============================================================================

def create_sms_gateway(settings: Settings) -> SMSGateway:
    """
    Create an SMS gateway based on SMS_BACKEND.

    Raises:
        ConfigurationError: unknown backend or missing Twilio credentials
    """
    backend = settings.sms_backend.lower()

    if backend == "dummy":
        logger.info("Creating DummySMSGateway")
        return DummySMSGateway(fail_numbers=settings.sms_fail_numbers_list)

    if backend == "twilio":
        if not (settings.twilio_account_sid and settings.twilio_auth_token):
            raise ConfigurationError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN are required for SMS_BACKEND=twilio")
        logger.info("Creating TwilioSMSGateway")
        return TwilioSMSGateway(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_from_number or "",
        )

    raise ConfigurationError(f"Unknown SMS_BACKEND: {settings.sms_backend}")
