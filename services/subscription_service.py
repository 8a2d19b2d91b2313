# services/subscription_service.py
import logging
from typing import Optional

from core.errors import NotFoundError
from models.schemas import ContactKind, Subscription, SubscriptionCriteria, SubscriptionUpdate
from tools.contact import resolve_contact

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Subscription lifecycle as seen by the API layer: register, modify, disable and verify.

    Wraps the store and the notifier so a subscription whose verification message cannot be
    delivered never stays enabled.
    """

    def __init__(self, store, notifier):
        self.store = store
        self.notifier = notifier

    async def register(self, criteria: SubscriptionCriteria, contact: str, enabled: bool = True) -> Subscription:
        sub = await self.store.create(criteria, contact, enabled=enabled)
        await self._send_verification(sub, "created")
        return sub

    async def modify(self, access_key: str, changes: SubscriptionUpdate) -> Subscription:
        sub = await self.store.update(changes, access_key=access_key)
        if sub is None:
            raise NotFoundError(f"No subscription with access key {access_key}")
        if "contact" in changes.changes():
            await self._send_verification(sub, "modified")
        return sub

    async def disable(self, access_key: str) -> Subscription:
        sub = await self.store.update(SubscriptionUpdate(enabled=False), access_key=access_key)
        if sub is None:
            raise NotFoundError(f"No subscription with access key {access_key}")
        logger.info("Disabled subscription %s", access_key)
        return sub

    async def get(self, access_key: str) -> Subscription:
        sub = await self.store.get(access_key=access_key)
        if sub is None:
            raise NotFoundError(f"No subscription with access key {access_key}")
        return sub

    async def confirm_verification(self, sender: str, access_key: Optional[str]) -> str:
        """
        Handle an inbound verification reply: the message body is the access key.

        Marks the subscription verified when the sender matches its contact and returns the
        text to reply with either way.
        """
        key = (access_key or "").strip()
        sub = await self.store.get(access_key=key) if key else None

        verified = False
        if sub is not None and self._same_contact(sender, sub.contact):
            await self.store.update(SubscriptionUpdate(verified=True), access_key=key)
            verified = True
            logger.info("Verified subscription %s", key)
        else:
            logger.warning("Verification rejected for access key %r from %s", key, sender)

        return self.notifier.reply_message(verified, key)

    async def _send_verification(self, sub: Subscription, action: str) -> None:
        try:
            await self.notifier.send_verification(sub, action)
        except Exception as e:
            # cannot confirm the contact, so the subscription must not stay active
            logger.error("Verification for %s failed, disabling subscription: %s", sub.access_key, e)
            try:
                await self.store.update(SubscriptionUpdate(enabled=False), subscription_id=sub.id)
            except Exception as disable_error:
                logger.error("Unable to disable subscription %s after failed verification: %s",
                             sub.access_key, disable_error)
            raise

    @staticmethod
    def _same_contact(sender: str, contact: str) -> bool:
        a, b = resolve_contact(sender), resolve_contact(contact)
        if a.kind == ContactKind.UNKNOWN or b.kind == ContactKind.UNKNOWN:
            return False
        return a == b
