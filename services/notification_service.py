# services/notification_service.py
import logging
from typing import Optional

from config.settings import settings
from core.errors import ContactError, UnsupportedChannelError, ValidationError
from models.schemas import ContactKind, DeliveryReceipt, SlotEvent, Subscription
from tools.contact import resolve_contact
from tools.formatter import format_message

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Formats and sends subscriber-facing messages.

    The transport only knows how to push a body to a destination; everything about
    choosing the channel, rendering templates and refusing unusable contacts lives here.
    """

    def __init__(self, transport, app_name: Optional[str] = None, templates: Optional[dict] = None):
        self.transport = transport
        self.app_name = app_name or settings.APP_NAME
        self.templates = {
            "notification": settings.NOTIFICATION_TEMPLATE,
            "verification": settings.VERIFICATION_TEMPLATE,
            "verified": settings.VERIFIED_TEMPLATE,
            "not_verified": settings.NOT_VERIFIED_TEMPLATE,
        }
        self.templates.update(templates or {})

    def format_message(self, template_key: str, variables: Optional[dict] = None) -> str:
        return format_message(self.templates[template_key], variables, app_name=self.app_name)

    async def send(self, kind: ContactKind, destination: str, message: str) -> DeliveryReceipt:
        """
        Send a message over one channel.

        Raises:
            ValidationError: destination or message empty
            UnsupportedChannelError: channel exists but is not implemented (e-mail)
            ContactError: unknown channel
            TransportError: the transport failed, including errors embedded in a success response
        """
        if not kind or not destination or not message:
            raise ValidationError("Kind, destination, and message must all have valid values")

        if kind == ContactKind.SMS:
            return await self.transport.deliver(destination, message)
        if kind == ContactKind.EMAIL:
            raise UnsupportedChannelError("Email delivery is not currently implemented")
        raise ContactError(f"Unknown contact kind {kind!r}, unable to send message")

    async def send_notification(self, subscription: Subscription, event: SlotEvent) -> DeliveryReceipt:
        """Tell a verified subscriber that slots opened up."""
        if subscription is None or not subscription.contact:
            raise ContactError("Subscription must be present and contain a contact value")
        if not subscription.verified:
            raise ContactError(f"Contact for subscription {subscription.access_key} is not verified")

        contact = resolve_contact(subscription.contact)
        if contact.kind == ContactKind.UNKNOWN:
            raise ContactError("Unknown contact type for subscription, unable to send notification")

        message = self.format_message("notification", {
            "availableSlots": event.available_slots,
            "totalSlots": event.total_slots,
            "accessKey": subscription.access_key,
            "institutionKey": subscription.institution_key,
            "courseKey": subscription.course_key,
            "sectionKey": subscription.section_key,
            "termKey": subscription.term_key,
            "contact": subscription.contact,
        })
        receipt = await self.send(contact.kind, contact.normalized, message)
        logger.info("Notification sent for %s to %s", subscription.access_key, contact.normalized)
        return receipt

    async def send_verification(self, subscription: Subscription, action: str) -> Optional[DeliveryReceipt]:
        """
        Ask the subscriber to confirm the contact. `action` is "created" or "modified".
        Already verified subscriptions are left alone and None is returned.
        """
        if subscription is None or not subscription.contact:
            raise ContactError("Subscription must be present and contain a contact value")
        if subscription.verified:
            return None

        contact = resolve_contact(subscription.contact)
        if contact.kind == ContactKind.UNKNOWN:
            raise ContactError("Unknown contact type for verification, unable to send verification")

        message = self.format_message("verification", {
            "action": action,
            "accessKey": subscription.access_key,
            "contact": subscription.contact,
        })
        return await self.send(contact.kind, contact.normalized, message)

    async def send_verified(self, contact: str, access_key: str) -> DeliveryReceipt:
        if not contact:
            raise ContactError("A contact value must be present")

        resolved = resolve_contact(contact)
        if resolved.kind == ContactKind.UNKNOWN:
            raise ContactError("Unknown contact type for verified message, unable to send message")

        message = self.format_message("verified", {"accessKey": access_key, "contact": contact})
        return await self.send(resolved.kind, resolved.normalized, message)

    def reply_message(self, verified: bool, access_key: str) -> str:
        """Body of the reply to an inbound verification message."""
        return self.format_message("verified" if verified else "not_verified", {"accessKey": access_key})
