"""
SMS delivery transports.

- TwilioTransport: real SMS through the Twilio REST API
- ConsoleTransport: dev fallback that only logs the message (used when Twilio is not configured)

Both expose `async deliver(destination, body) -> DeliveryReceipt` and raise TransportError on failure.
`destination` must already be a full E.164 number, e.g. "+15195550101".
"""
import asyncio
import logging

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from config.settings import settings
from core.errors import TransportError
from models.schemas import DeliveryReceipt

logger = logging.getLogger(__name__)


class TwilioTransport:
    channel = "sms"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client=None):
        self.from_number = from_number
        self.client = client or TwilioClient(account_sid, auth_token)

    async def deliver(self, destination: str, body: str) -> DeliveryReceipt:
        try:
            # twilio's client is blocking, keep it off the event loop
            msg = await asyncio.to_thread(
                self.client.messages.create,
                to=destination,
                from_=self.from_number,
                body=body,
            )
        except TwilioRestException as e:
            logger.error("[SMS][Twilio FAILED] To %s: %s (code=%s)", destination, e.msg, e.code)
            raise TransportError(f"Twilio rejected message: {e.msg}", code=e.code) from e
        except TwilioException as e:
            logger.error("[SMS][Twilio FAILED] To %s: %s", destination, e)
            raise TransportError(f"Twilio error: {e}") from e

        # Twilio can accept the request and still report a failure in the payload
        error_code = getattr(msg, "error_code", None)
        error_message = getattr(msg, "error_message", None)
        if error_code or error_message:
            logger.error("[SMS][Twilio FAILED] To %s: %s (code=%s)", destination, error_message, error_code)
            raise TransportError(
                f"Error found in Twilio response ({error_code or ''}): {error_message}",
                code=error_code,
            )

        logger.info("[SMS][Twilio] To %s sid=%s status=%s", destination, msg.sid, msg.status)
        return DeliveryReceipt(
            channel=self.channel,
            destination=destination,
            sid=msg.sid,
            status=msg.status,
            delivered=True,
        )


class ConsoleTransport:
    channel = "sms"

    async def deliver(self, destination: str, body: str) -> DeliveryReceipt:
        banner = "=" * 60
        logger.info("[SMS][CONSOLE] To %s:\n%s\n%s\n%s", destination, banner, body, banner)
        return DeliveryReceipt(channel=self.channel, destination=destination, status="logged", delivered=False)


def build_transport():
    """Twilio when fully configured, console otherwise."""
    if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER:
        return TwilioTransport(
            settings.TWILIO_ACCOUNT_SID,
            settings.TWILIO_AUTH_TOKEN,
            settings.TWILIO_FROM_NUMBER,
        )
    logger.warning("Twilio is not configured; SMS messages will only be logged.")
    return ConsoleTransport()
