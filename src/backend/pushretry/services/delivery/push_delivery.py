"""Push gateway delivery using pywebpush.

Implements the delivery function the retry processor calls:
``await deliver(notification) -> DeliveryResult``.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable

import structlog
from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushretry.models.push_subscription import PushSubscription
from pushretry.services.retry.types import DeliveryResult, FailedNotification

logger = structlog.get_logger()

SubscriptionResolver = Callable[[str], Awaitable[list[dict]]]
SubscriptionExpiredHandler = Callable[[str], Awaitable[object]]


class SqlSubscriptionResolver:
    """Looks up a user's active WebPush subscriptions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, user_id: str) -> list[dict]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PushSubscription).where(
                    PushSubscription.user_id == user_id,
                    PushSubscription.is_active.is_(True),
                )
            )
            return [s.to_subscription_info() for s in result.scalars().all()]

    async def deactivate(self, endpoint: str) -> int:
        """Deactivate every active subscription for an expired endpoint.

        Returns:
            Number of subscriptions deactivated
        """
        async with self.session_factory.begin() as db:
            result = await db.execute(
                select(PushSubscription).where(
                    PushSubscription.endpoint == endpoint,
                    PushSubscription.is_active.is_(True),
                )
            )
            subscriptions = list(result.scalars().all())
            for subscription in subscriptions:
                subscription.is_active = False
        return len(subscriptions)


class PushGatewayDelivery:
    """Sends push notifications via WebPush API with VAPID authentication."""

    def __init__(
        self,
        subscription_resolver: SubscriptionResolver,
        vapid_private_key: str = "",
        vapid_mailto: str = "",
        on_subscription_expired: SubscriptionExpiredHandler | None = None,
    ):
        """Initialize WebPush delivery if a VAPID key is configured.

        Args:
            subscription_resolver: Returns the subscription infos of a user
            vapid_private_key: VAPID private key; empty disables delivery
            vapid_mailto: VAPID subject claim
            on_subscription_expired: Called with the endpoint of a
                subscription the gateway reported as gone (410)
        """
        self.subscription_resolver = subscription_resolver
        self.on_subscription_expired = on_subscription_expired
        self.private_key = vapid_private_key
        self.mailto = vapid_mailto
        self.enabled = bool(vapid_private_key)
        if self.enabled:
            logger.info("WebPush delivery initialized", mailto=self.mailto)
        else:
            logger.warning("VAPID keys not configured - push delivery disabled")

    @classmethod
    def from_settings(
        cls,
        settings,
        subscription_resolver: SubscriptionResolver,
        on_subscription_expired: SubscriptionExpiredHandler | None = None,
    ) -> "PushGatewayDelivery":
        return cls(
            subscription_resolver=subscription_resolver,
            on_subscription_expired=on_subscription_expired,
            vapid_private_key=settings.vapid_private_key,
            vapid_mailto=settings.vapid_mailto,
        )

    async def __call__(self, notification: FailedNotification) -> DeliveryResult:
        """Deliver a notification to every subscription of its recipients.

        Succeeds if at least one push was accepted by the gateway.
        """
        if not self.enabled:
            return DeliveryResult(success=False, errors=["WebPush not configured"])

        payload = json.dumps(
            {
                "title": notification.title,
                "body": notification.body,
                "tag": notification.notification_id,
                "data": notification.data or {},
            }
        )
        options = notification.options or {}

        sent = 0
        errors: list[str] = []
        for user_id in notification.user_ids:
            subscriptions = await self.subscription_resolver(user_id)
            if not subscriptions:
                errors.append(f"No push subscriptions for user {user_id}")
                continue

            for subscription_info in subscriptions:
                error = await self._send(subscription_info, payload, options)
                if error is None:
                    sent += 1
                else:
                    errors.append(f"{user_id}: {error}")

        logger.info(
            "Push delivery finished",
            notification_id=notification.notification_id,
            messages_sent=sent,
            errors=len(errors),
        )
        return DeliveryResult(success=sent > 0, errors=errors, messages_sent=sent)

    async def _send(self, subscription_info: dict, payload: str, options: dict) -> str | None:
        """Send one push. Returns an error string, or None on success."""
        try:
            # pywebpush is synchronous, run it in a thread
            await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=payload,
                vapid_private_key=self.private_key,
                vapid_claims={"sub": self.mailto},
                ttl=options.get("ttl", 0),
                content_encoding="aes128gcm",  # RFC 8188 standard
            )
            return None

        except WebPushException as e:
            error_str = str(e)

            # 410 Gone: subscription expired
            if "410" in error_str or "Gone" in error_str:
                logger.info(
                    "Push subscription expired",
                    endpoint=subscription_info.get("endpoint", "")[:50],
                )
                await self._expire_subscription(subscription_info.get("endpoint", ""))
                return "subscription_expired"

            logger.error("Push notification failed", error=error_str)
            return error_str

        except Exception as e:
            logger.error("Push notification failed", error=str(e))
            return str(e) or type(e).__name__

    async def _expire_subscription(self, endpoint: str) -> None:
        """Stop sending to a subscription the gateway reported as gone."""
        if self.on_subscription_expired is None or not endpoint:
            return
        try:
            await self.on_subscription_expired(endpoint)
        except Exception as e:
            logger.error(
                "Failed to deactivate expired push subscription",
                endpoint=endpoint[:50],
                error=str(e),
            )
